"""
Error types raised while preparing and sampling trap potentials.

Every failure aborts the current invocation; nothing here is retried.
"""


class TrapPotentialError(Exception):
    pass


class GridFileNotFound(TrapPotentialError):
    pass


class MalformedGridFile(TrapPotentialError):
    pass


class LayoutImportFailed(TrapPotentialError):
    pass


class ElectrodeLookupFailed(TrapPotentialError):
    #electrode count in the grid file does not match the layout
    pass


class CacheNotPrimed(TrapPotentialError):
    pass


class SolveFailure(TrapPotentialError):
    pass


class OutputWriteFailure(TrapPotentialError):
    pass
