"""
Potential field driver.

    python potential_driver.py START STOP [JOBS]

START == STOP primes the solve cache: the world is meshed and solved once
with every electrode at 0 V and the result is stored in the cache directory.
No field file is written in this mode, whatever the value of START.

Otherwise every electrode index i in [START, STOP) is sampled in ascending
order: electrode i (and its mirror partner i + num_electrodes when i > 0)
is held at 1 V and the potential on the grid goes to field<i>.txt.

Important: sampling only reads the cache. Run the priming step once, to
completion, before launching sampling runs; after that any number of
sampling processes may run concurrently on disjoint indices. Sampling
without a primed cache fails with CacheNotPrimed. JOBS > 1 does both steps
in order (prime if needed, then one process per electrode).
"""

import sys
from typing import Callable, List, Optional, Set

from joblib import Parallel, delayed

import solve_cache
from driver_config import DriverConfig, load_config
from field_writer import write_potential_field
from grid_info import GridGeometry, read_grid_info
from trap_errors import TrapPotentialError
from world_solver import GROUND, FemBackend

USAGE = "Usage: python potential_driver.py START STOP [JOBS]"


def activation_set(index: int, num_electrodes: int) -> Set[int]:
    #Electrode 0 has no mirror partner; every other index drives i and i + N together
    electrodes = {index}
    if index > 0:
        electrodes.add(index + num_electrodes)
    return electrodes


def prepare_world(info: GridGeometry, config: DriverConfig, backend, priming: bool,
                  log: Callable = print):
    """
    Import the layout and bring up the solved world.

    Returns (world, layout). In priming mode an existing cache built from the
    same layout and settings is reused; a mismatching one is solved again and
    replaced atomically.
    """
    layout = backend.import_layout(config.layout, log=log)
    cache_key = solve_cache.create_cache_key(layout.fingerprint, config.solver)

    if priming:
        use_cache = solve_cache.is_primed(config.cache_dir) and \
            solve_cache.check_cache_key(config.cache_dir, cache_key, log=log)
        if use_cache:
            log(f"[driver] Cache in {config.cache_dir} is already primed for this layout")
    else:
        solve_cache.check_cache_key(config.cache_dir, cache_key, log=log)
        use_cache = True

    world = backend.build_world(config.cache_dir, tolerance=config.tolerance,
                                cache_key=cache_key, use_cache=use_cache, log=log)

    # every non-ground electrode takes part in the solve, driven or not
    for i in range(info.total_electrodes):
        world.insert(layout.find_electrode(str(i)))
    world.insert(layout.find_electrode(GROUND))

    world.refine(config.refine_levels)
    world.correct_normals(config.reference_point)

    log("[driver] Started solving...")
    world.solve()
    log("[driver] Done solving")
    return world, layout


def compute(start: int, stop: int, config: Optional[DriverConfig] = None,
            backend=None, log: Callable = print) -> List:
    """
    Prime the cache (start == stop) or sample electrodes [start, stop).

    Returns the field files written, in index order. A failure aborts the
    remaining indices; files already written stay valid.
    """
    config = config or load_config()
    backend = backend or FemBackend(config.solver)
    info = read_grid_info(config.grid_file)
    log(f"[driver] Grid {info.dimx}x{info.dimy}x{info.dimz}, "
        f"{info.total_electrodes} electrodes + ground")

    if start == stop:
        log("[driver] Writing solve cache")
        prepare_world(info, config, backend, priming=True, log=log)
        stats = solve_cache.get_cache_stats(config.cache_dir)
        log(f"[driver] Cache primed ({len(stats['electrodes'])} electrodes, "
            f"{stats['world_bytes'] / 1e6:.1f} MB)")
        return []

    if start > stop:
        log(f"[driver] Warning: empty electrode range [{start}, {stop})")
        return []

    solve_cache.require_primed(config.cache_dir)
    world, layout = prepare_world(info, config, backend, priming=False, log=log)

    written = []
    for i in range(start, stop):
        log(f"[driver] Starting on electrode {i}")
        electrodes = activation_set(i, info.num_electrodes)
        outfile = config.field_path(i)
        written.append(write_potential_field(world, layout, electrodes, info, outfile, log=log))
    return written


def _sample_one(index: int, config: DriverConfig, backend):
    def log(msg):
        print(f"[electrode {index}] {msg}")
    return compute(index, index + 1, config=config, backend=backend, log=log)[0]


def run_parallel(start: int, stop: int, n_jobs: int = -1, config: Optional[DriverConfig] = None,
                 backend=None, log: Callable = print) -> List:
    """
    Prime (if needed) in this process, then sample each electrode in its own process.

    The priming step finishes before any worker starts, which is what makes
    the concurrent sampling safe.
    """
    config = config or load_config()
    backend = backend or FemBackend(config.solver)
    if not solve_cache.is_primed(config.cache_dir):
        compute(start, start, config=config, backend=backend, log=log)
    if start >= stop:
        return []
    log(f"[driver] Sampling electrodes {start}..{stop - 1} with n_jobs={n_jobs}")
    return Parallel(n_jobs=n_jobs)(
        delayed(_sample_one)(i, config, backend) for i in range(start, stop))


def main(argv=None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    if len(argv) not in (2, 3):
        print(USAGE, file=sys.stderr)
        return 2
    try:
        start, stop = int(argv[0]), int(argv[1])
        jobs = int(argv[2]) if len(argv) == 3 else 1
    except ValueError:
        print(f"{USAGE}  (integers)", file=sys.stderr)
        return 2
    if jobs == 0:
        # joblib: positive for a process count, negative counts back from all CPUs
        print(f"{USAGE}  (JOBS must not be 0)", file=sys.stderr)
        return 2

    try:
        if jobs == 1 or start == stop:
            compute(start, stop)
        else:
            run_parallel(start, stop, n_jobs=jobs)
    except TrapPotentialError as exc:
        print(f"[driver] {type(exc).__name__}: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
