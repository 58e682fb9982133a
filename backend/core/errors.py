"""
Error taxonomy for the replenishment engine.

Severity contract:
  - InsufficientDataError: non-fatal. The forecaster never raises it; a
    zero-sample forecast is flagged with confidence 0 instead.
  - ComputationGuardError: non-fatal. Division guards resolve locally with
    documented fallback constants.
  - ConflictUnresolvedError: fatal. Indicates a defect in conflict resolution.
  - ExecutionPreconditionFailed: per-decision. The decision fails, the run continues.
  - ExternalDependencyError: retried at the call site; aborts the run once exhausted.
"""


class ReplenishmentError(Exception):
    """Base class for all replenishment engine errors."""


class InsufficientDataError(ReplenishmentError):
    """Raised by callers that refuse to act on a zero-confidence forecast."""


class ComputationGuardError(ReplenishmentError):
    """A numeric guard tripped (zero demand, zero holding cost)."""

    def __init__(self, guard: str, fallback: float):
        super().__init__(f"{guard} guard tripped, using fallback {fallback}")
        self.guard = guard
        self.fallback = fallback


class ConflictUnresolvedError(ReplenishmentError):
    """Two conflicting decisions survived resolution. Always fatal."""


class ExecutionPreconditionFailed(ReplenishmentError):
    """Inventory state no longer satisfies a decision's preconditions."""


class ExternalDependencyError(ReplenishmentError):
    """Store, catalog or sink unreachable after timeouts/retries."""


class InvalidTransitionError(ReplenishmentError):
    """Illegal decision status change."""


class RunCancelledError(ReplenishmentError):
    """The run was cancelled between phases."""


class RecordNotFoundError(ExecutionPreconditionFailed, LookupError):
    """A stock row or catalog entry the engine expected does not exist."""
