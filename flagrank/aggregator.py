"""
Score Aggregator: folds submission and hint events into team aggregates.

Delivery is at-least-once and handlers may run concurrently, so every
aggregate change is keyed by the event id and committed together with the
processed-event ledger entry. Nothing here raises to the caller: problems
become an ``ApplyOutcome`` and a log line, keeping ingestion live.
"""

import enum
import logging
from typing import Any, Union

from .errors import (
    DuplicateEvent,
    MalformedEvent,
    ReferenceMissing,
    StoreError,
)
from .models import HintUsed, SubmissionRecorded, parse_event
from .repository import AggregateDelta, CompetitionRepository

logger = logging.getLogger(__name__)


class ApplyOutcome(str, enum.Enum):
    APPLIED = "applied"
    # Processed without changing the aggregate (incorrect, or level already credited)
    IGNORED = "ignored"
    DUPLICATE = "duplicate"
    # Missing team/level or malformed payload; not marked processed
    SKIPPED = "skipped"
    # Store failure or timeout; nothing committed, redelivery will apply it
    RETRY = "retry"

    @property
    def changed_aggregate(self) -> bool:
        return self is ApplyOutcome.APPLIED


class ScoreAggregator:
    def __init__(self, repository: CompetitionRepository) -> None:
        self.repository = repository

    async def apply(self, event: Any) -> ApplyOutcome:
        """Apply a submission or hint event, validating raw payloads first."""
        try:
            event = parse_event(event)
        except MalformedEvent as e:
            logger.warning("Skipping malformed event: %s", e)
            return ApplyOutcome.SKIPPED

        if isinstance(event, SubmissionRecorded):
            return await self.apply_submission(event)
        return await self.apply_hint(event)

    async def apply_submission(
        self,
        event: Union[SubmissionRecorded, Any],
    ) -> ApplyOutcome:
        if not isinstance(event, SubmissionRecorded):
            return await self.apply(event)

        if event.is_correct:
            delta = AggregateDelta(
                score=event.score_awarded,
                levels_completed=1,
                time_penalty=event.time_penalty,
                last_submission_at=event.submitted_at,
                solved_level_id=event.level_id,
            )
        else:
            delta = AggregateDelta()

        return await self._apply(event, delta)

    async def apply_hint(
        self,
        event: Union[HintUsed, Any],
    ) -> ApplyOutcome:
        if not isinstance(event, HintUsed):
            return await self.apply(event)

        # Points hints only show up later as a smaller score_awarded
        penalty = event.penalty if event.hint_type == "time" else 0
        delta = AggregateDelta(time_penalty=penalty, hints_used=1)

        return await self._apply(event, delta)

    async def references_exist(self, event: Union[SubmissionRecorded, HintUsed]) -> bool:
        team = await self.repository.get_team(event.team_id)
        if team is None:
            logger.warning(
                "Skipping %s event %s: team %s does not exist",
                event.kind,
                event.id,
                event.team_id,
            )
            return False

        level = await self.repository.get_level(event.level_id)
        if level is None:
            logger.warning(
                "Skipping %s event %s: level %s does not exist",
                event.kind,
                event.id,
                event.level_id,
            )
            return False

        return True

    async def _apply(
        self,
        event: Union[SubmissionRecorded, HintUsed],
        delta: AggregateDelta,
    ) -> ApplyOutcome:
        try:
            if not await self.references_exist(event):
                return ApplyOutcome.SKIPPED

            applied = await self.repository.apply_team_delta(
                event.id, event.kind, event.team_id, delta
            )
        except DuplicateEvent:
            logger.info("Ignoring redelivered %s event %s", event.kind, event.id)
            return ApplyOutcome.DUPLICATE
        except ReferenceMissing as e:
            logger.warning("Skipping %s event %s: %s", event.kind, event.id, e)
            return ApplyOutcome.SKIPPED
        except StoreError as e:
            logger.warning(
                "Could not apply %s event %s, will need redelivery: %s",
                event.kind,
                event.id,
                e,
            )
            return ApplyOutcome.RETRY

        if not applied:
            logger.warning(
                "Team %s already solved level %s; event %s not credited",
                event.team_id,
                event.level_id,
                event.id,
            )
            return ApplyOutcome.IGNORED

        if delta.is_empty():
            return ApplyOutcome.IGNORED

        logger.debug(
            "Applied %s event %s to team %s: %s", event.kind, event.id, event.team_id, delta
        )
        return ApplyOutcome.APPLIED
