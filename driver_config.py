import os, json, pathlib
from dataclasses import dataclass, field
from typing import Optional, Tuple

FIELD_PREFIX = "field"
FIELD_SUFFIX = ".txt"

DEFAULT_CFG = {
    "tolerance": 1e-5,                   # max relative residual of the basis solves
    "refine_levels": 0,                  # uniform mesh refinements after meshing
    "reference_point": [0.0, 0.0, 0.0],  # must lie in the meshed vacuum
    "vacuum_box_half_extent_m": 0.02,    # 2 cm default half-extent of vacuum box
    "lc_surface_m": 5e-5,                # surface mesh target size
    "lc_volume_m": 2e-4,                 # volume mesh target size
    "outer_box_tag": 9999,               # tag for outer box surfaces
}


@dataclass
class DriverConfig:
    #Where one driver invocation reads and writes, plus solver settings
    workdir: pathlib.Path
    grid_file: pathlib.Path
    layout: pathlib.Path
    cache_dir: pathlib.Path
    output_dir: pathlib.Path
    solver: dict = field(default_factory=lambda: dict(DEFAULT_CFG))
    sources: Tuple[str, ...] = ()

    @property
    def tolerance(self) -> float:
        return float(self.solver["tolerance"])

    @property
    def refine_levels(self) -> int:
        return int(self.solver["refine_levels"])

    @property
    def reference_point(self) -> Tuple[float, float, float]:
        x, y, z = self.solver["reference_point"]
        return float(x), float(y), float(z)

    def field_path(self, index: int) -> pathlib.Path:
        return self.output_dir / f"{FIELD_PREFIX}{index}{FIELD_SUFFIX}"


def _resolve(workdir: pathlib.Path, env_name: str, default: str) -> pathlib.Path:
    p = pathlib.Path(os.environ.get(env_name, default)).expanduser()
    if not p.is_absolute():
        p = workdir / p
    return p


def _load_solver_overrides(workdir: pathlib.Path):
    """
    Load solver/mesh overrides from JSON.

    Resolution order:
    1) BEM_SOLVER_CONFIG env var (path to json)
    2) <workdir>/solver_config.json
    """
    cfg = {}
    sources = []
    env_path = os.environ.get("BEM_SOLVER_CONFIG")
    path = _resolve(workdir, "BEM_SOLVER_CONFIG", "solver_config.json")
    if not path.exists():
        if env_path:
            print(f"[config] Warning: BEM_SOLVER_CONFIG={env_path} does not exist; ignoring.")
        return cfg, sources
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (OSError, ValueError) as exc:
        print(f"[config] Warning: Failed to read solver config {path}: {exc}")
        return cfg, sources
    if isinstance(data, dict):
        cfg.update(data)
        sources.append(str(path))
    else:
        print(f"[config] Warning: {path} did not contain a JSON object; ignoring.")
    return cfg, sources


def load_config(workdir=None, overrides: Optional[dict] = None) -> DriverConfig:
    #Build the configuration for one invocation rooted at workdir (default: cwd)
    workdir = pathlib.Path(workdir or os.getcwd()).resolve()
    file_cfg, sources = _load_solver_overrides(workdir)
    solver = DEFAULT_CFG | file_cfg | (overrides or {})
    if sources:
        print(f"[config] Loaded solver overrides from: {', '.join(sources)}")

    return DriverConfig(
        workdir=workdir,
        grid_file=_resolve(workdir, "BEM_GRID_FILE", "grid.txt"),
        layout=_resolve(workdir, "BEM_LAYOUT", "electrodes"),
        cache_dir=_resolve(workdir, "BEM_CACHE_DIR", "gen.cache"),
        output_dir=_resolve(workdir, "BEM_OUTPUT_DIR", "."),
        solver=solver,
        sources=tuple(sources),
    )
