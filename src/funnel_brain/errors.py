"""Domain errors raised by the pipeline and experiment services.

Every error carries the HTTP status the API layer answers with.  They
subclass ValueError so callers that only care about "bad input" can keep
catching that.
"""

from __future__ import annotations


class FunnelBrainError(ValueError):
    """Base class for validation and state errors surfaced to callers."""

    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class UnknownStageError(FunnelBrainError):
    def __init__(self, slug: str) -> None:
        super().__init__(f"Unknown pipeline stage '{slug}'")
        self.slug = slug


class LeadNotFoundError(FunnelBrainError):
    status_code = 404

    def __init__(self, lead_id: str) -> None:
        super().__init__(f"Lead {lead_id} not found")
        self.lead_id = lead_id


class LedgerImmutableError(FunnelBrainError):
    """Raised on any attempt to update or delete an append-only record."""

    status_code = 409


# ---------------------------------------------------------------------------
# Experiments
# ---------------------------------------------------------------------------


class TestNotFoundError(FunnelBrainError):
    __test__ = False  # keep pytest from collecting this
    status_code = 404

    def __init__(self, test_id: str) -> None:
        super().__init__(f"Experiment {test_id} not found")
        self.test_id = test_id


class TestNotActiveError(FunnelBrainError):
    __test__ = False
    status_code = 409

    def __init__(self, test_id: str) -> None:
        super().__init__(f"Experiment {test_id} is not active")
        self.test_id = test_id


class NoVariantsError(FunnelBrainError):
    def __init__(self, test_id: str) -> None:
        super().__init__(f"Experiment {test_id} has no selectable variants")
        self.test_id = test_id


class NoEligibleVariantsError(FunnelBrainError):
    def __init__(self, test_id: str) -> None:
        super().__init__(
            f"Experiment {test_id} needs at least one variant with traffic weight > 0"
        )
        self.test_id = test_id


class InvalidTransitionError(FunnelBrainError):
    status_code = 409

    def __init__(self, test_id: str, current: str, target: str) -> None:
        super().__init__(f"Experiment {test_id} cannot move from '{current}' to '{target}'")
        self.current = current
        self.target = target


class InvalidWeightError(FunnelBrainError):
    def __init__(self, weight: float) -> None:
        super().__init__(f"Traffic weight must be a finite non-negative number, got {weight}")
        self.weight = weight


class ExperimentInUseError(FunnelBrainError):
    """Deleting would orphan recorded assignments/events or re-draw live sessions."""

    status_code = 409

    def __init__(self, test_id: str, what: str = "Experiment") -> None:
        super().__init__(
            f"{what} cannot be deleted: experiment {test_id} is active "
            f"or has recorded assignments or events"
        )
        self.test_id = test_id


class UnknownVariantError(FunnelBrainError):
    status_code = 404

    def __init__(self, test_id: str, variant_id: str) -> None:
        super().__init__(f"Variant {variant_id} does not belong to experiment {test_id}")
        self.test_id = test_id
        self.variant_id = variant_id


class InvalidEventTypeError(FunnelBrainError):
    def __init__(self, event_type: str) -> None:
        super().__init__(f"Unsupported event type '{event_type}'")
        self.event_type = event_type
