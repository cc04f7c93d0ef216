"""
Event ingestion: boundary validation, event log, aggregate, projection, feeds.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .aggregator import ApplyOutcome, ScoreAggregator
from .bus import EventBus
from .errors import HintUnavailable, MalformedEvent, ReferenceMissing, StoreError
from .leaderboard import LeaderboardProjector
from .models import HintUsed, SubmissionRecorded, parse_event
from .repository import CompetitionRepository
from .scoring import build_submission

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestResult:
    event_id: Optional[str]
    outcome: ApplyOutcome
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        result = {"id": self.event_id, "outcome": self.outcome.value}
        if self.error:
            result["error"] = self.error
        return result


class EventIngestor:
    def __init__(
        self,
        repository: CompetitionRepository,
        aggregator: ScoreAggregator,
        projector: LeaderboardProjector,
        bus: EventBus,
    ) -> None:
        self.repository = repository
        self.aggregator = aggregator
        self.projector = projector
        self.bus = bus

    async def ingest(self, payload: Any) -> IngestResult:
        """
        Accept one event from a transport.

        The log append and the aggregate update are both keyed by event id,
        so redelivering the same payload is harmless. The projection update
        runs last and on its own: if it fails, the projection lags until the
        next refresh or rebuild.

        @param payload: Raw mapping or an already validated event
        @return: IngestResult with the aggregator outcome
        """
        try:
            event = parse_event(payload)
        except MalformedEvent as e:
            logger.warning("Rejected event: %s", e)
            event_id = payload.get("id") if isinstance(payload, dict) else None
            return IngestResult(event_id, ApplyOutcome.SKIPPED, str(e))

        try:
            # Events for unknown teams or levels are not logged; a redelivery
            # after the team or level exists goes through normally
            if not await self.aggregator.references_exist(event):
                return IngestResult(
                    event.id, ApplyOutcome.SKIPPED, "unknown team or level"
                )

            # Already applied, possibly before a reset emptied the log
            if await self.repository.is_processed(event.id):
                logger.info("Ignoring redelivered %s event %s", event.kind, event.id)
                return IngestResult(event.id, ApplyOutcome.DUPLICATE)

            if isinstance(event, SubmissionRecorded):
                await self.repository.append_submission(event)
            else:
                await self.repository.append_hint(event)
        except StoreError as e:
            logger.warning("Could not log %s event %s: %s", event.kind, event.id, e)
            return IngestResult(event.id, ApplyOutcome.RETRY, str(e))

        outcome = await self.aggregator.apply(event)

        if outcome.changed_aggregate:
            try:
                await self.projector.refresh_team(event.team_id)
            except StoreError as e:
                logger.warning(
                    "Leaderboard entry for team %s lags: %s", event.team_id, e
                )
            self.bus.publish("teams", {"teamId": event.team_id})

        if outcome in (ApplyOutcome.APPLIED, ApplyOutcome.IGNORED):
            self.bus.publish(
                "events",
                {"id": event.id, "kind": event.kind, "teamId": event.team_id},
            )

        return IngestResult(event.id, outcome)

    async def record_submission(
        self,
        team_id: str,
        level_id: str,
        status: str,
        time_taken: float,
        submitted_at: Optional[int] = None,
        event_id: Optional[str] = None,
    ) -> IngestResult:
        """
        Score an attempt from the hints the team took on the level, then ingest it.

        @raises ReferenceMissing: if the level does not exist
        """
        level = await self.repository.get_level(level_id)
        if level is None:
            raise ReferenceMissing("level", level_id)

        hints = await self.repository.list_hints(team_id=team_id, level_id=level_id)
        event = build_submission(
            team_id,
            level,
            status,
            hints_used=len(hints),
            time_taken=time_taken,
            submitted_at=submitted_at,
            event_id=event_id,
        )
        return await self.ingest(event)

    async def use_hint(
        self,
        team_id: str,
        level_id: str,
        event_id: Optional[str] = None,
    ) -> IngestResult:
        """
        Take the next hint on a level.

        @raises ReferenceMissing: if the team or level does not exist
        @raises HintUnavailable: when every available hint has been taken
        """
        if await self.repository.get_team(team_id) is None:
            raise ReferenceMissing("team", team_id)
        level = await self.repository.get_level(level_id)
        if level is None:
            raise ReferenceMissing("level", level_id)

        taken = await self.repository.list_hints(team_id=team_id, level_id=level_id)
        for hint in taken:
            if event_id and hint.id == event_id:
                # Retried request for a hint that was already handed out
                return await self.ingest(hint)

        if len(taken) >= level.hints_available:
            raise HintUnavailable(
                f"team {team_id} has used all {level.hints_available} hints on {level_id}"
            )

        penalty = (
            level.point_deduction
            if level.hint_type == "points"
            else level.time_penalty_minutes
        )
        event = HintUsed(
            team_id=team_id,
            level_id=level_id,
            hint_type=level.hint_type,
            penalty=penalty,
            hint_number=len(taken) + 1,
            **({"id": event_id} if event_id else {}),
        )
        return await self.ingest(event)
