"""
Grid descriptor parsing: positional fields, derived steps and the error
kinds raised for unreadable or malformed files.
"""

import numpy as np
import pytest

from conftest import write_grid
from grid_info import GridGeometry, parse_grid_lines, read_grid_info
from trap_errors import GridFileNotFound, MalformedGridFile, TrapPotentialError


# =============================================================================
# Well-formed files
# =============================================================================

def test_reads_every_field(tmp_path):
    path = write_grid(tmp_path / "grid.txt", num_electrodes=5, dimx=11, dimy=3, dimz=21,
                      startx=-1e-3, starty=-2.5e-5, startz=5e-5,
                      endx=1e-3, endy=2.5e-5, endz=1e-4)
    info = read_grid_info(path)
    assert info == GridGeometry(5, 11, 3, 21, -1e-3, -2.5e-5, 5e-5, 1e-3, 2.5e-5, 1e-4)
    assert info.total_electrodes == 12
    assert info.shape == (11, 3, 21)
    assert info.num_points == 11 * 3 * 21


def test_labels_are_ignored_and_whitespace_trimmed():
    lines = ["anything at all",
             "a:\t3", "b: 2", "c:2 ", "d: 4",
             "e: 0.0", "f:0", "g: -1", "h: 1.0", "i: 1", "j:\t 3\t"]
    info = parse_grid_lines(lines)
    assert (info.num_electrodes, info.dimx, info.dimy, info.dimz) == (3, 2, 2, 4)
    assert info.startz == -1.0
    assert info.endz == 3.0


def test_extra_trailing_lines_are_ignored(tmp_path):
    path = write_grid(tmp_path / "grid.txt")
    with open(path, "a") as f:
        f.write("comment: whatever\n\n")
    assert read_grid_info(path).num_electrodes == 3


def test_bytes_after_header_are_never_decoded(tmp_path):
    path = write_grid(tmp_path / "grid.txt", num_electrodes=4)
    with open(path, "ab") as f:
        f.write(b"\xff\xfe binary trailer \x80\x81\n" * 2000)
    assert read_grid_info(path).num_electrodes == 4


def test_crlf_line_endings(tmp_path):
    path = write_grid(tmp_path / "grid.txt")
    path.write_bytes(path.read_bytes().replace(b"\n", b"\r\n"))
    assert read_grid_info(path).endz == 0.8


def test_binary_header_rejected(tmp_path):
    path = tmp_path / "grid.txt"
    path.write_bytes(b"---\nnum_electrodes: \xff\n" + b"x: 1\n" * 9)
    with pytest.raises(MalformedGridFile, match="not a text file"):
        read_grid_info(path)


def test_steps_and_axis_values():
    info = GridGeometry(1, 5, 2, 3, 0.0, -1.0, 2.0, 1.0, 1.0, 3.0)
    assert info.steps == pytest.approx((0.25, 2.0, 0.5))
    np.testing.assert_allclose(info.axis_values("x"), [0.0, 0.25, 0.5, 0.75, 1.0])
    np.testing.assert_allclose(info.axis_values("y"), [-1.0, 1.0])
    np.testing.assert_allclose(info.axis_values("z"), [2.0, 2.5, 3.0])
    with pytest.raises(ValueError):
        info.axis_values("w")


def test_reversed_axis_gives_negative_step():
    info = GridGeometry(0, 3, 2, 2, 1.0, 0.0, 0.0, -1.0, 1.0, 1.0)
    assert info.steps[0] == pytest.approx(-1.0)
    np.testing.assert_allclose(info.axis_values("x"), [1.0, 0.0, -1.0])


def test_zero_electrodes_still_has_two_extra():
    info = GridGeometry(0, 2, 2, 2, 0, 0, 0, 1, 1, 1)
    assert info.total_electrodes == 2


# =============================================================================
# Failures
# =============================================================================

def test_missing_file(tmp_path):
    with pytest.raises(GridFileNotFound):
        read_grid_info(tmp_path / "nope.txt")


def test_too_few_lines(tmp_path):
    path = tmp_path / "grid.txt"
    path.write_text("---\nnum_electrodes: 3\ndimx: 2\n")
    with pytest.raises(MalformedGridFile, match="at least 10"):
        read_grid_info(path)


@pytest.mark.parametrize("line", ["dimx 2", "dimx: two", "dimx: 2.5", "dimx:"])
def test_bad_integer_line(line):
    lines = ["---", "n: 1", line, "y: 2", "z: 2",
             "a: 0", "b: 0", "c: 0", "d: 1", "e: 1", "f: 1"]
    with pytest.raises(MalformedGridFile, match="line 3"):
        parse_grid_lines(lines)


@pytest.mark.parametrize("value", ["abc", "nan", "inf"])
def test_bad_float_line(value):
    lines = ["---", "n: 1", "x: 2", "y: 2", "z: 2",
             f"a: {value}", "b: 0", "c: 0", "d: 1", "e: 1", "f: 1"]
    with pytest.raises(MalformedGridFile, match="line 6"):
        parse_grid_lines(lines)


def test_dimension_below_two_rejected(tmp_path):
    path = write_grid(tmp_path / "grid.txt", dimy=1)
    with pytest.raises(MalformedGridFile, match="dimy"):
        read_grid_info(path)


def test_negative_electrode_count_rejected(tmp_path):
    path = write_grid(tmp_path / "grid.txt", num_electrodes=-1)
    with pytest.raises(MalformedGridFile):
        read_grid_info(path)


def test_errors_share_a_base_class(tmp_path):
    with pytest.raises(TrapPotentialError):
        read_grid_info(tmp_path / "missing.txt")
