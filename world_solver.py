"""
Finite-element trap world behind the solver interface the driver uses.

    layout = backend.import_layout(path)        # ImportedElectrodes
    world = backend.build_world(cache_dir, tolerance=1e-5)
    world.insert(layout.find_electrode("0"))
    world.refine(levels)                        # mesh the vacuum
    world.correct_normals((0, 0, 0))
    world.solve()                               # or load the cached solution
    layout.find_electrode("0").set_voltage(1)
    phi = world.evaluate_potential(x, y, z)

solve() computes one unit basis potential per inserted electrode (that
electrode at 1 V, every other electrode and the outer box at 0 V) with a
single factorization of the Laplace operator. Any voltage configuration is
then a superposition of the bases, so the solved world is independent of
the voltages and can be cached once and reused by every sampling run.
"""

import hashlib, pathlib
from typing import Callable, Dict, Iterable, List, Optional

import numpy as np
from scipy.sparse.linalg import splu
from scipy.spatial import cKDTree
from skfem import Basis, ElementTetP1, asm
from skfem.models.poisson import laplace

import layout_mesh
import solve_cache
from trap_errors import (CacheNotPrimed, ElectrodeLookupFailed, LayoutImportFailed,
                         SolveFailure)

GROUND = "GROUND"


class Electrode:
    def __init__(self, name: str, layout: "ImportedElectrodes"):
        self.name = name
        self.layout = layout
        self.voltage = 0.0

    def set_voltage(self, voltage: float):
        self.voltage = float(voltage)

    def __repr__(self):
        return f"Electrode({self.name!r}, voltage={self.voltage:g})"


class ImportedElectrodes:
    """Electrodes named by an imported layout.

    mesher(refine_levels, work_dir) produces the tagged vacuum mesh; it runs
    only when a world actually has to be solved.
    """

    def __init__(self, names: Iterable[str], mesher: Callable, fingerprint: str,
                 source: str = ""):
        self.electrodes = {str(n): Electrode(str(n), self) for n in names}
        self.mesher = mesher
        self.fingerprint = fingerprint
        self.source = source

    @property
    def names(self) -> List[str]:
        return sorted(self.electrodes)

    def find_electrode(self, name) -> Electrode:
        try:
            return self.electrodes[str(name)]
        except KeyError:
            raise ElectrodeLookupFailed(
                f"Electrode '{name}' not found in layout {self.source or '<in-memory>'} "
                f"(has {len(self.electrodes)} electrodes)") from None

    @classmethod
    def from_mesh(cls, mesh, source: str = "<in-memory>") -> "ImportedElectrodes":
        #Layout given directly as a skfem mesh with named boundaries
        names = [n for n in (mesh.boundaries or {}) if n != layout_mesh.OUTER_BOX]
        h = hashlib.sha256()
        h.update(np.ascontiguousarray(mesh.p).tobytes())
        h.update(np.ascontiguousarray(mesh.t).tobytes())
        for name in sorted(mesh.boundaries or {}):
            h.update(name.encode())
            h.update(np.ascontiguousarray(mesh.boundaries[name]).tobytes())

        def mesher(refine_levels, work_dir):
            if refine_levels:
                raise ValueError("In-memory layouts cannot be refined; pass a refined mesh.")
            return mesh

        return cls(names, mesher, h.hexdigest(), source)


def _file_digest(paths: Iterable[pathlib.Path]) -> str:
    h = hashlib.sha256()
    for p in paths:
        h.update(p.name.encode())
        with open(p, "rb") as f:
            for chunk in iter(lambda: f.read(1 << 20), b""):
                h.update(chunk)
    return h.hexdigest()


class World:
    """Solved vacuum region of one layout.

    With use_cache, an existing solved world in cache_dir is loaded instead
    of meshing and solving again.
    """

    def __init__(self, cache_dir, tolerance: float = 1e-5, cache_key: str = "",
                 use_cache: bool = True, log: Callable = print):
        self.cache_dir = pathlib.Path(cache_dir)
        self.tolerance = float(tolerance)
        self.cache_key = cache_key
        self.log = log
        self.from_cache = use_cache and solve_cache.saved_world_path(self.cache_dir).exists()

        self._layout: Optional[ImportedElectrodes] = None
        self._electrodes: Dict[str, Electrode] = {}
        self._mesh = None
        self.nodes = None          # (n_nodes, 3)
        self.tets = None           # (n_elem, 4)
        self.phi = None            # (n_electrodes, n_nodes), row order = self.names
        self.names: List[str] = []
        self._tree = None
        self._combined = None
        self._combined_volts = None
        self._warned_outside = False

    def insert(self, electrode: Electrode):
        if self._layout is None:
            self._layout = electrode.layout
        elif electrode.layout is not self._layout:
            raise ValueError("All electrodes of a world must come from one layout.")
        self._electrodes[electrode.name] = electrode

    def refine(self, refine_levels: int):
        if self.from_cache:
            self.log("[world] Using cached solved world; skipping mesh generation")
            return
        if self._layout is None:
            raise ValueError("Insert electrodes before refining the world.")
        self._mesh = self._layout.mesher(int(refine_levels), self.cache_dir)
        self.nodes = np.ascontiguousarray(self._mesh.p.T, dtype=np.float64)
        self.tets = np.ascontiguousarray(self._mesh.t.T, dtype=np.int64)
        self.log(f"[world] Mesh ready: {len(self.nodes)} nodes, {len(self.tets)} tetrahedra")

    def correct_normals(self, reference_point):
        """Orient every tetrahedron positively and check the reference point.

        The reference point (normally the trap origin) has to sit inside the
        meshed vacuum, otherwise the layout or the unit scale is off.
        """
        if self.from_cache:
            return
        if self.tets is None:
            raise ValueError("Refine the world before correcting normals.")
        a, b, c, d = (self.nodes[self.tets[:, i]] for i in range(4))
        vol6 = np.einsum("ij,ij->i", b - a, np.cross(c - a, d - a))
        if np.any(np.abs(vol6) < 1e-300):
            raise SolveFailure(f"{int(np.sum(np.abs(vol6) < 1e-300))} degenerate tetrahedra in mesh")
        flip = vol6 < 0
        if np.any(flip):
            self.tets[flip] = self.tets[flip][:, [0, 1, 3, 2]]
            self.log(f"[world] Reoriented {int(flip.sum())} tetrahedra")
        self._tree = cKDTree(self.nodes[self.tets].mean(axis=1))
        if self._find_element(np.asarray(reference_point, dtype=np.float64)) < 0:
            self.log(f"[world] Warning: reference point {tuple(reference_point)} is outside the meshed vacuum")

    def solve(self):
        if self.from_cache:
            self._load_cached()
            return
        if self._mesh is None:
            raise ValueError("Refine the world before solving.")
        self.log(f"[world] Solving {len(self._electrodes)} electrode bases...")
        self.names = sorted(self._electrodes)
        self.phi = self._solve_bases()
        if self._tree is None:
            self._tree = cKDTree(self.nodes[self.tets].mean(axis=1))

        solve_cache.save_world(self.cache_dir, {
            "nodes": self.nodes,
            "tets": self.tets,
            "electrode_names": np.array(self.names),
            "phi": self.phi,
        }, log=self.log)
        solve_cache.write_marker(self.cache_dir, self.cache_key, self.names, log=self.log)

    def _solve_bases(self) -> np.ndarray:
        mesh = self._mesh
        boundaries = mesh.boundaries or {}
        V = Basis(mesh, ElementTetP1())
        A = asm(laplace, V).tocsr()

        e_dofs = {}
        for name in self.names:
            if name not in boundaries:
                raise ElectrodeLookupFailed(f"Electrode '{name}' has no facets in the mesh.")
            e_dofs[name] = V.get_dofs(facets=boundaries[name]).all()
        fixed = list(e_dofs.values())
        if layout_mesh.OUTER_BOX in boundaries:
            fixed.append(V.get_dofs(facets=boundaries[layout_mesh.OUTER_BOX]).all())
        else:
            self.log("[world] Warning: no 'outer_box' boundary; unlisted faces are Neumann.")

        D = np.unique(np.concatenate(fixed))
        I = np.setdiff1d(np.arange(V.N), D)
        A_II = A[I][:, I].tocsc()
        A_ID = A[I][:, D]

        lu = None
        if I.size:
            try:
                lu = splu(A_II)
            except RuntimeError as exc:
                raise SolveFailure(f"Laplace operator could not be factorized: {exc}") from exc

        phi = np.zeros((len(self.names), V.N), dtype=np.float64)
        for row, name in enumerate(self.names):
            xD = np.isin(D, e_dofs[name]).astype(np.float64)
            phi[row, D] = xD
            if lu is None:
                continue
            rhs = -(A_ID @ xD)
            xI = lu.solve(rhs)
            if not np.all(np.isfinite(xI)):
                raise SolveFailure(f"Non-finite potential in basis for electrode '{name}'")
            residual = np.linalg.norm(A_II @ xI - rhs) / max(np.linalg.norm(rhs), 1e-300)
            if residual > self.tolerance:
                raise SolveFailure(
                    f"Basis for electrode '{name}' did not converge "
                    f"(residual {residual:.2e} > {self.tolerance:.2e})")
            phi[row, I] = xI
        return phi

    def _load_cached(self):
        data = solve_cache.load_world(self.cache_dir)
        names = [str(n) for n in data["electrode_names"]]
        missing = sorted(set(self._electrodes) - set(names))
        if missing:
            raise CacheNotPrimed(
                f"Cached world in {self.cache_dir} lacks electrodes {missing}; prime again.")
        self.nodes = data["nodes"]
        self.tets = data["tets"]
        self.names = names
        self.phi = data["phi"]
        self._tree = cKDTree(self.nodes[self.tets].mean(axis=1))
        self.log(f"[world] Loaded solved world ({len(names)} electrodes) from {self.cache_dir}")

    def _combined_phi(self) -> np.ndarray:
        volts = np.array([self._electrodes[n].voltage if n in self._electrodes else 0.0
                          for n in self.names])
        if self._combined is None or not np.array_equal(volts, self._combined_volts):
            self._combined = volts @ self.phi
            self._combined_volts = volts
        return self._combined

    def _barycentric(self, p, tet):
        a, b, c, d = self.nodes[tet]
        M = np.column_stack((b - a, c - a, d - a))
        try:
            w = np.linalg.solve(M, p - a)
        except np.linalg.LinAlgError:
            return None
        return np.array([1.0 - w.sum(), w[0], w[1], w[2]])

    def _find_element(self, p, k_neighbors=24) -> int:
        # try a handful of nearest centroids, check barycentrics
        k = min(k_neighbors, len(self.tets))
        _, idxs = self._tree.query(p, k=k)
        for ei in np.atleast_1d(idxs):
            w = self._barycentric(p, self.tets[ei])
            if w is not None and np.all(w >= -1e-9):
                return int(ei)
        return -1

    def evaluate_potential(self, x: float, y: float, z: float) -> float:
        #Potential at one point for the current electrode voltages; NaN outside the mesh
        if self.phi is None:
            raise ValueError("World has not been solved.")
        p = np.array([x, y, z], dtype=np.float64)
        ei = self._find_element(p)
        if ei < 0:
            if not self._warned_outside:
                self.log(f"[world] Warning: point ({x:g}, {y:g}, {z:g}) outside mesh; potential undefined.")
                self._warned_outside = True
            return float("nan")
        tet = self.tets[ei]
        w = self._barycentric(p, tet)
        return float(np.dot(self._combined_phi()[tet], w))


class FemBackend:
    """Solver backend: layout import and world construction."""

    def __init__(self, mesh_config: Optional[dict] = None):
        self.mesh_config = dict(mesh_config or {})

    def import_layout(self, path, log: Callable = print) -> ImportedElectrodes:
        path = pathlib.Path(path)
        if not path.exists():
            raise LayoutImportFailed(f"Trap layout {path} does not exist.")

        if path.is_dir():
            files = layout_mesh.find_electrode_files(path)
            fingerprint = _file_digest(files.values())
            cfg = self.mesh_config

            def mesher(refine_levels, work_dir):
                msh = layout_mesh.mesh_from_cad(files, pathlib.Path(work_dir) / "layout.msh",
                                                cfg, refine_levels)
                return layout_mesh.read_tagged_mesh(msh)

            names = list(files)
        elif path.suffix.lower() in layout_mesh.MESH_SUFFIXES:
            fingerprint = _file_digest([path])

            def mesher(refine_levels, work_dir):
                src = path
                if refine_levels:
                    src = layout_mesh.refine_msh(path, pathlib.Path(work_dir) / "layout_refined.msh",
                                                 refine_levels)
                return layout_mesh.read_tagged_mesh(src)

            names = [n for n in layout_mesh.physical_names(path) if n != layout_mesh.OUTER_BOX]
        else:
            raise LayoutImportFailed(
                f"Unsupported layout {path}: expected a directory of CAD files or a .msh file.")

        if not names:
            raise LayoutImportFailed(f"Layout {path} names no electrodes.")
        log(f"[world] Imported layout {path.name}: {len(names)} electrodes")
        return ImportedElectrodes(names, mesher, fingerprint, str(path))

    def build_world(self, cache_dir, tolerance: float = 1e-5, cache_key: str = "",
                    use_cache: bool = True, log: Callable = print) -> World:
        return World(cache_dir, tolerance=tolerance, cache_key=cache_key,
                     use_cache=use_cache, log=log)
