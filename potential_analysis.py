"""
Analysis of sampled potential fields: ion equilibrium positions on the trap axis.

Workflow:
    info = read_grid_info("grid.txt")
    fields = load_fields(".", info, range(4))
    grid = PotentialGrid(info, combine_fields(fields, {0: -1.0, 1: 2.5, 3: 2.5}))
    x, v = grid.axial_line("x", y=0.0, z=70e-6)
    poly = fit_axial_potential(x, v)
    positions = ion_equilibrium(poly, n_ions=3, length_scale=1.0)

Each field file already contains an electrode together with its mirror
partner, so voltages are given per field index.
"""

import pathlib
from typing import Dict, Iterable, Optional, Tuple

import numpy as np
from numpy.polynomial import Polynomial
from scipy.constants import e, epsilon_0
from scipy.interpolate import RegularGridInterpolator
from scipy.optimize import minimize, minimize_scalar

from driver_config import FIELD_PREFIX, FIELD_SUFFIX
from grid_info import GridGeometry

AXIAL_FIT_DEGREE = 4
COULOMB_K = 1.0 / (4.0 * np.pi * epsilon_0)


def load_field(path, info: GridGeometry) -> np.ndarray:
    #field file -> (dimx, dimy, dimz) array; file order is x outer, z inner
    values = np.loadtxt(path, ndmin=1)
    if values.size != info.num_points:
        raise ValueError(f"{path}: expected {info.num_points} values, found {values.size}")
    return values.reshape(info.shape)


def load_fields(directory, info: GridGeometry, indices: Iterable[int]) -> Dict[int, np.ndarray]:
    directory = pathlib.Path(directory)
    fields = {}
    for i in indices:
        fields[i] = load_field(directory / f"{FIELD_PREFIX}{i}{FIELD_SUFFIX}", info)
    print(f"[analysis] Loaded {len(fields)} field(s) from {directory}")
    return fields


def combine_fields(fields: Dict[int, np.ndarray], voltages: Dict[int, float]) -> np.ndarray:
    #Superpose unit fields with a voltage per field index; unlisted fields sit at 0 V
    missing = sorted(set(voltages) - set(fields))
    if missing:
        raise KeyError(f"No field loaded for electrode(s) {missing}")
    shape = next(iter(fields.values())).shape
    total = np.zeros(shape, dtype=np.float64)
    for i, v in voltages.items():
        total += float(v) * fields[i]
    return total


class PotentialGrid:
    """Trilinear interpolation of a potential sampled on the driver grid."""

    def __init__(self, info: GridGeometry, potential: np.ndarray):
        if potential.shape != info.shape:
            raise ValueError(f"potential has shape {potential.shape}, grid is {info.shape}")
        self.info = info
        self.x_grid = info.axis_values("x")
        self.y_grid = info.axis_values("y")
        self.z_grid = info.axis_values("z")
        # out-of-bounds points are extrapolated, as for the trap field grids
        self._interp = RegularGridInterpolator((self.x_grid, self.y_grid, self.z_grid),
                                               potential, bounds_error=False, fill_value=None)

    def potential(self, x, y, z):
        x_arr, y_arr, z_arr = np.broadcast_arrays(np.asarray(x, dtype=float),
                                                  np.asarray(y, dtype=float),
                                                  np.asarray(z, dtype=float))
        pts = np.column_stack([x_arr.ravel(), y_arr.ravel(), z_arr.ravel()])
        return self._interp(pts).reshape(x_arr.shape)

    def axial_line(self, axis: str = "x", n_points: Optional[int] = None,
                   **fixed: float) -> Tuple[np.ndarray, np.ndarray]:
        """Potential along one axis with the other two coordinates held fixed.

        Defaults to the grid's own sample coordinates along that axis.
        """
        coords = self.info.axis_values(axis)
        if n_points:
            coords = np.linspace(coords[0], coords[-1], n_points)
        xyz = {"x": 0.0, "y": 0.0, "z": 0.0}
        xyz.update({k: float(v) for k, v in fixed.items()})
        xyz[axis] = coords
        return coords, self.potential(xyz["x"], xyz["y"], xyz["z"])


def fit_axial_potential(coords, values, degree: int = AXIAL_FIT_DEGREE) -> Polynomial:
    coords = np.asarray(coords, dtype=float)
    values = np.asarray(values, dtype=float)
    mask = np.isfinite(values)
    if mask.sum() <= degree:
        raise ValueError(f"need more than {degree} finite samples for a degree-{degree} fit")
    # domain stays the sampled range, which axial_center searches by default
    return Polynomial.fit(coords[mask], values[mask], degree)


def axial_center(poly: Polynomial, bounds: Optional[Tuple[float, float]] = None) -> Tuple[float, float]:
    """
    Minimum of the axial potential and its curvature coefficient a2 there.

    V(x) ~ V(c) + a2 (x - c)^2 near the minimum.
    """
    lo, hi = bounds if bounds is not None else poly.domain
    samples = np.linspace(lo, hi, 2001)
    i0 = int(np.argmin(poly(samples)))
    res = minimize_scalar(poly, bounds=(samples[max(i0 - 1, 0)], samples[min(i0 + 1, len(samples) - 1)]),
                          method="bounded")
    c = float(res.x)
    a2 = float(poly.deriv(2)(c)) / 2.0
    if a2 <= 0:
        raise ValueError(f"axial potential is not confining at x={c:g} (a2={a2:g})")
    return c, a2


def axial_frequency(poly: Polynomial, mass: float, charge: float = e,
                    length_scale: float = 1.0, bounds: Optional[Tuple[float, float]] = None) -> float:
    #Harmonic axial frequency in Hz; length_scale converts grid units to meters
    _, a2 = axial_center(poly, bounds)
    omega = np.sqrt(2.0 * charge * a2 / (mass * length_scale**2))
    return float(omega / (2 * np.pi))


def ion_equilibrium(poly: Polynomial, n_ions: int, charge: float = e,
                    length_scale: float = 1.0, guess=None,
                    bounds: Optional[Tuple[float, float]] = None) -> np.ndarray:
    """
    Equilibrium positions of n_ions along the axis, in grid units, sorted.

    Minimizes sum_i V(x_i) + k q / L * sum_{i<j} 1/|x_i - x_j| (energy per
    charge, volts). Positions are scaled by the two-ion spacing
    d = (k q / (L a2))^(1/3) so the minimizer works on O(1) numbers.
    """
    if n_ions < 1:
        raise ValueError("n_ions must be at least 1")
    c, a2 = axial_center(poly, bounds)
    coulomb = COULOMB_K * charge / length_scale
    d = (coulomb / a2) ** (1.0 / 3.0)
    e_scale = a2 * d**2
    iu = np.triu_indices(n_ions, k=1)
    v0 = float(poly(c))

    def energy(u):
        x = c + d * u
        trap = np.sum(poly(x) - v0)
        if n_ions == 1:
            return trap / e_scale
        sep = np.abs(u[:, None] - u[None, :])[iu]
        return (trap + coulomb / d * np.sum(1.0 / sep)) / e_scale

    if guess is None:
        u0 = np.arange(n_ions) - (n_ions - 1) / 2.0
    else:
        u0 = (np.asarray(guess, dtype=float) - c) / d

    res = minimize(energy, u0, method="BFGS", options={"gtol": 1e-10})
    if not np.all(np.isfinite(res.x)):
        raise RuntimeError(f"equilibrium search failed: {res.message}")
    positions = np.sort(c + d * res.x)
    print(f"[analysis] {n_ions} ion(s) around x={c:.4g}: spacing "
          f"{np.diff(positions).mean() if n_ions > 1 else 0.0:.4g} ({res.message})")
    return positions
