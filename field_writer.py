"""
Grid sampling of a solved world into a potential field file.

The file holds one float per line, dimx*dimy*dimz lines, walked with x as the
outer loop and z as the inner one. It is written under a temporary name and
only renamed to its final path once every point has been evaluated, so an
interrupted run never leaves a truncated field file behind.
"""

import contextlib, os, pathlib, tempfile, time
from typing import Callable, Iterable

from grid_info import GridGeometry
from trap_errors import ElectrodeLookupFailed, OutputWriteFailure
from world_solver import GROUND


def set_electrode_voltages(layout, active: Iterable[int], info: GridGeometry):
    #1 V on the active electrodes, 0 V on every other one and on ground
    active = set(active)
    out_of_range = sorted(i for i in active if not 0 <= i < info.total_electrodes)
    if out_of_range:
        # e.g. the mirror partner of a high index
        raise ElectrodeLookupFailed(
            f"Electrodes {out_of_range} outside 0..{info.total_electrodes - 1} "
            f"(num_electrodes={info.num_electrodes})")
    for i in range(info.total_electrodes):
        layout.find_electrode(str(i)).set_voltage(1.0 if i in active else 0.0)
    layout.find_electrode(GROUND).set_voltage(0.0)


def write_potential_field(world, layout, active: Iterable[int], info: GridGeometry,
                          outfile, log: Callable = print) -> pathlib.Path:
    """
    Sample the world potential on the full grid and write it to outfile.

    Every grid point is evaluated afresh; there is no early exit.

    Raises:
        ElectrodeLookupFailed: layout lacks an electrode index or GROUND
        OutputWriteFailure: the file could not be created or written
    """
    set_electrode_voltages(layout, active, info)

    xstep, ystep, zstep = info.steps
    num_points = info.num_points
    outfile = pathlib.Path(outfile)
    log(f"[field] Writing to '{outfile}'")
    start_time = time.time()

    try:
        outfile.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(outfile.parent), prefix=outfile.name, suffix=".tmp")
    except OSError as exc:
        raise OutputWriteFailure(f"Cannot create {outfile}: {exc}") from exc

    datafile = os.fdopen(fd, "w")
    try:
        for i in range(info.dimx):
            log(f"[field]   Processing point {i * info.dimy * info.dimz} out of {num_points}")
            x = info.startx + i * xstep
            slab = [world.evaluate_potential(x, info.starty + j * ystep, info.startz + k * zstep)
                    for j in range(info.dimy) for k in range(info.dimz)]
            _file_op(outfile, datafile.writelines, [f"{float(phi)!r}\n" for phi in slab])
        _file_op(outfile, datafile.close)
        _file_op(outfile, os.replace, tmp_name, outfile)
    except BaseException:
        with contextlib.suppress(OSError):
            datafile.close()
        _discard(tmp_name)
        raise

    log(f"[field] Finished processing {num_points} points ({time.time() - start_time:.1f}s)")
    return outfile


def _file_op(outfile, fn, *args):
    #only file-system failures become OutputWriteFailure; evaluation errors pass through
    try:
        return fn(*args)
    except OSError as exc:
        raise OutputWriteFailure(f"Failed writing {outfile}: {exc}") from exc


def _discard(tmp_name):
    if os.path.exists(tmp_name):
        os.remove(tmp_name)
