"""
Error taxonomy for the scoring engine.
"""

from typing import Optional


class CompetitionError(Exception):
    """Base class for every error raised by the engine."""


class ReferenceMissing(CompetitionError):
    """An event references a team or level that does not exist."""

    def __init__(
        self,
        kind: str,
        ref_id: str,
    ) -> None:
        super().__init__(f"{kind} '{ref_id}' does not exist")
        self.kind = kind
        self.ref_id = ref_id


class MalformedEvent(CompetitionError):
    """An event payload failed schema validation."""

    def __init__(
        self,
        message: str,
        payload: Optional[object] = None,
    ) -> None:
        super().__init__(message)
        self.payload = payload


class DuplicateEvent(CompetitionError):
    """The event id is already recorded in the processed-event ledger."""

    def __init__(self, event_id: str) -> None:
        super().__init__(f"event '{event_id}' was already processed")
        self.event_id = event_id


class StoreError(CompetitionError):
    """The backing store failed."""

    retryable = False


class StoreTimeout(StoreError):
    """A store operation exceeded its timeout. Safe to retry."""

    retryable = True


class PartialReset(StoreError):
    """A reset pass failed; the competition is left partially reset."""

    retryable = True

    def __init__(
        self,
        stage: str,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(f"reset incomplete: pass '{stage}' failed ({cause})")
        self.stage = stage
        self.cause = cause


class InvalidConfirmation(CompetitionError):
    """Wrong confirmation code for a destructive admin action."""


class HintUnavailable(CompetitionError):
    """The team has no hints left on this level."""


class InvalidEventConfig(CompetitionError):
    """Event totals must be positive."""
