"""Exception hierarchy for recon3d.

Exceptions are reserved for invalid inputs and programmer errors. Runtime
conditions such as an unusable frame, lost tracking or a non-converged
optimization are reported through status values on result objects instead.
"""

from __future__ import annotations


class Recon3DError(Exception):
    """Base class for all recon3d errors."""


class ConfigError(Recon3DError, ValueError):
    """Invalid or unknown configuration option."""


class GeometryError(Recon3DError, ValueError):
    """Malformed geometric input (bad shapes, zero quaternion, bad indices)."""


class IllegalTransitionError(Recon3DError):
    """Attempted tracking state transition that the state machine forbids."""

    def __init__(self, source: object, target: object) -> None:
        super().__init__(f"Illegal tracking transition {source} -> {target}")
        self.source = source
        self.target = target


class OptimizationCancelled(Recon3DError):
    """Raised inside an optimization pass that has been superseded.

    Workers catch this and drop the pass; it never reaches user code.
    """
