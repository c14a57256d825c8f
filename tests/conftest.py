"""
Shared fixtures: grid files, a small in-memory strip-electrode mesh and a
backend that serves it without gmsh.
"""

import pathlib

import numpy as np
import pytest
from skfem import MeshTet

from driver_config import load_config
from world_solver import FemBackend, ImportedElectrodes

NUM_ELECTRODES = 3          # 2*3 + 2 = 8 strips, named "0".."7"

GRID_TEMPLATE = """---
num_electrodes: {num_electrodes}
dimx: {dimx}
dimy: {dimy}
dimz: {dimz}
startx: {startx}
starty: {starty}
startz: {startz}
endx: {endx}
endy: {endy}
endz: {endz}
"""

DEFAULT_GRID = dict(num_electrodes=NUM_ELECTRODES, dimx=2, dimy=2, dimz=2,
                    startx=0.1, starty=0.2, startz=0.2,
                    endx=0.9, endy=0.8, endz=0.8)


def write_grid(path, **overrides) -> pathlib.Path:
    values = dict(DEFAULT_GRID)
    values.update(overrides)
    path = pathlib.Path(path)
    path.write_text(GRID_TEMPLATE.format(**values))
    return path


def strip_mesh(n_strips: int = 2 * NUM_ELECTRODES + 2) -> MeshTet:
    """Unit cube with n_strips x-strips on z=0 and GROUND on z=1."""
    mesh = MeshTet.init_tensor(np.linspace(0, 1, n_strips + 1),
                               np.linspace(0, 1, 3),
                               np.linspace(0, 1, 3))
    width = 1.0 / n_strips
    bnd = {}
    for k in range(n_strips):
        lo, hi = k * width, (k + 1) * width
        bnd[str(k)] = lambda x, lo=lo, hi=hi: (np.abs(x[2]) < 1e-9) & (x[0] > lo) & (x[0] < hi)
    bnd["GROUND"] = lambda x: np.abs(x[2] - 1.0) < 1e-9
    return mesh.with_boundaries(bnd)


def plate_mesh() -> MeshTet:
    #Parallel plates: "0" on z=0, GROUND on z=1, insulating sides
    mesh = MeshTet.init_tensor(np.linspace(0, 1, 4), np.linspace(0, 1, 4), np.linspace(0, 1, 5))
    return mesh.with_boundaries({
        "0": lambda x: np.abs(x[2]) < 1e-9,
        "GROUND": lambda x: np.abs(x[2] - 1.0) < 1e-9,
    })


class InMemoryBackend(FemBackend):
    """FemBackend whose layout is a prebuilt skfem mesh."""

    def __init__(self, mesh):
        super().__init__()
        self.mesh = mesh
        self.imports = 0

    def import_layout(self, path, log=print) -> ImportedElectrodes:
        self.imports += 1
        log(f"[world] Imported in-memory layout for {path}")
        return ImportedElectrodes.from_mesh(self.mesh)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("BEM_SOLVER_CONFIG", "BEM_GRID_FILE", "BEM_LAYOUT",
                 "BEM_CACHE_DIR", "BEM_OUTPUT_DIR"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture(scope="session")
def strips():
    return strip_mesh()


@pytest.fixture
def backend(strips):
    return InMemoryBackend(strips)


@pytest.fixture
def workdir(tmp_path):
    write_grid(tmp_path / "grid.txt")
    return tmp_path


@pytest.fixture
def config(workdir):
    return load_config(workdir)


@pytest.fixture
def logs():
    return []
