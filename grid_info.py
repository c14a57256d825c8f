"""
Grid descriptor loading.

The grid file is a small YAML-looking text file, but it is read positionally:
one header line, then nine "label: value" lines in a fixed order. Labels are
never checked, only their position.

    ---
    num_electrodes: 3
    dimx: 2
    dimy: 2
    dimz: 2
    startx: 0.0
    starty: 0.0
    startz: 0.0
    endx: 1.0
    endy: 1.0
    endz: 1.0
"""

import itertools
import math
from dataclasses import dataclass
from typing import List, Tuple, Union

import numpy as np

from trap_errors import GridFileNotFound, MalformedGridFile

GRID_LINE_COUNT = 10

# (attribute, type) in file order, after the header line
_FIELD_ORDER = (
    ("num_electrodes", int),
    ("dimx", int),
    ("dimy", int),
    ("dimz", int),
    ("startx", float),
    ("starty", float),
    ("startz", float),
    ("endx", float),
    ("endy", float),
    ("endz", float),
)


@dataclass(frozen=True)
class GridGeometry:
    #Sampling domain and electrode topology read from the grid file
    num_electrodes: int        # distinct electrode positions before mirroring
    dimx: int                  # points per axis
    dimy: int
    dimz: int
    startx: float              # layout length units
    starty: float
    startz: float
    endx: float
    endy: float
    endz: float

    @property
    def total_electrodes(self) -> int:
        # mirrored pairs plus two extra named electrodes; ground is separate
        return 2 * self.num_electrodes + 2

    @property
    def shape(self) -> Tuple[int, int, int]:
        return (self.dimx, self.dimy, self.dimz)

    @property
    def num_points(self) -> int:
        return self.dimx * self.dimy * self.dimz

    @property
    def steps(self) -> Tuple[float, float, float]:
        return (
            (self.endx - self.startx) / float(self.dimx - 1),
            (self.endy - self.starty) / float(self.dimy - 1),
            (self.endz - self.startz) / float(self.dimz - 1),
        )

    def axis_values(self, axis: str) -> np.ndarray:
        """
        Sample coordinates along one axis ('x', 'y' or 'z').

        Built as start + i * step so values match the ones the sampler walks.
        """
        if axis not in ("x", "y", "z"):
            raise ValueError(f"axis must be 'x', 'y' or 'z', got {axis!r}")
        idx = "xyz".index(axis)
        dim = self.shape[idx]
        start = getattr(self, f"start{axis}")
        return start + np.arange(dim) * self.steps[idx]

    def to_dict(self) -> dict:
        return {name: getattr(self, name) for name, _ in _FIELD_ORDER}


def _parse_value(line: str, kind: type, lineno: int) -> Union[int, float]:
    # payload is everything right of the first colon, blanks/tabs trimmed
    if ":" not in line:
        raise MalformedGridFile(f"line {lineno}: expected 'label: value', got {line!r}")
    strval = line.split(":", 1)[1].strip(" \t")
    try:
        val = kind(strval)
    except ValueError as exc:
        raise MalformedGridFile(
            f"line {lineno}: cannot parse {strval!r} as {kind.__name__}") from exc
    if kind is float and not math.isfinite(val):
        raise MalformedGridFile(f"line {lineno}: non-finite coordinate {strval!r}")
    return val


def parse_grid_lines(lines: List[str]) -> GridGeometry:
    #Positional parse of already-read lines; the first one is discarded
    if len(lines) < GRID_LINE_COUNT:
        raise MalformedGridFile(
            f"expected at least {GRID_LINE_COUNT} lines, found {len(lines)}")

    values = {}
    for offset, (name, kind) in enumerate(_FIELD_ORDER):
        lineno = offset + 2
        values[name] = _parse_value(lines[lineno - 1], kind, lineno)

    if values["num_electrodes"] < 0:
        raise MalformedGridFile("num_electrodes must not be negative")
    for axis in ("dimx", "dimy", "dimz"):
        if values[axis] < 2:
            # step = (end - start) / (dim - 1) needs two points
            raise MalformedGridFile(f"{axis} must be at least 2, got {values[axis]}")

    return GridGeometry(**values)


def read_grid_info(path) -> GridGeometry:
    """
    Load a grid descriptor file.

    Raises:
        GridFileNotFound: path missing or unreadable
        MalformedGridFile: too few lines, missing colon, bad number
    """
    try:
        with open(path, "rb") as f:
            raw = list(itertools.islice(f, GRID_LINE_COUNT))
    except OSError as exc:
        raise GridFileNotFound(f"cannot read grid file {path}: {exc}") from exc

    # only the fixed header is decoded; bytes after line ten are never looked at
    try:
        lines = [line.decode("utf-8").rstrip("\r\n") for line in raw]
    except UnicodeDecodeError as exc:
        raise MalformedGridFile(f"{path}: not a text file") from exc

    return parse_grid_lines(lines)
