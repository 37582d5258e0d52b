from .blocks.aux import DBL_EPSILON, InvalidBounds, InvalidConfig, LBFGSBConfig, Status
from .blocks.bounds import Box, BoundType, classify_bounds
from .blocks.memory import CorrectionStore
from .lbfgsb import ConsolePrinter, LBFGSBSolver, minimize

__all__ = [
    "minimize",
    "LBFGSBSolver",
    "LBFGSBConfig",
    "ConsolePrinter",
    "Status",
    "InvalidBounds",
    "InvalidConfig",
    "DBL_EPSILON",
    "Box",
    "BoundType",
    "classify_bounds",
    "CorrectionStore",
]
