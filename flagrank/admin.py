"""
Administrative operations: export, reset, event lifecycle and announcements.

Callers are assumed to be verified administrators. Unlike the live scoring
path, failures here are raised to the caller: these are deliberate,
human-initiated and retryable actions.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from . import __version__
from .bus import EventBus
from .errors import (
    InvalidConfirmation,
    InvalidEventConfig,
    PartialReset,
    StoreError,
)
from .models import Announcement, EventConfig, Snapshot, now_ms
from .repository import CompetitionRepository

logger = logging.getLogger(__name__)

DEFAULT_CONFIRMATION_CODE = "RESET_COMPETITION_NOW"


@dataclass
class ResetResult:
    success: bool
    message: str
    stats: Dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "message": self.message, "resetStats": self.stats}


class AdminCoordinator:
    """Reset/Export coordinator plus the event control surface."""

    def __init__(
        self,
        repository: CompetitionRepository,
        bus: Optional[EventBus] = None,
        config: Any = None,
    ) -> None:
        self.repository = repository
        self.bus = bus

        self.batch_size = 500
        self.confirmation_code = DEFAULT_CONFIRMATION_CODE
        if config is not None:
            self.batch_size = config.get("store", "batch_size") or self.batch_size
            self.confirmation_code = (
                config.get("admin", "reset_confirmation_code") or self.confirmation_code
            )

    def _publish(self, *topics: str, **payload: Any) -> None:
        if self.bus is None:
            return
        for topic in topics:
            self.bus.publish(topic, payload)

    async def export_snapshot(self) -> Snapshot:
        """
        Point-in-time dump of every structure, for backup and audit.

        The reads are independent, so each structure may reflect a slightly
        different instant. Do not treat the result as a consistent restore point.
        """
        exported_at = now_ms()
        snapshot_id = f"backup_{exported_at}"
        logger.info("Creating snapshot %s", snapshot_id)

        teams, levels, submissions, hints, leaderboard, event_config = await asyncio.gather(
            self.repository.list_teams(),
            self.repository.list_levels(),
            self.repository.list_submissions(),
            self.repository.list_hints(),
            self.repository.list_leaderboard_entries(),
            self.repository.get_event_config(),
        )

        snapshot = Snapshot(
            snapshot_id=snapshot_id,
            exported_at=exported_at,
            version=__version__,
            metadata={
                "totalTeams": len(teams),
                "totalLevels": len(levels),
                "totalSubmissions": len(submissions),
                "totalHints": len(hints),
                "totalLeaderboardEntries": len(leaderboard),
            },
            teams=teams,
            levels=levels,
            submissions=submissions,
            hints=hints,
            leaderboard=leaderboard,
            event_config=event_config,
        )
        logger.info("Snapshot %s created", snapshot_id)
        return snapshot

    async def reset_competition(self, confirmation_code: Optional[str] = None) -> ResetResult:
        """
        Erase the event log and zero every derived structure.

        Runs independent batched passes rather than one transaction. Every
        pass is idempotent, so after a failure the operator simply runs the
        reset again. Until a reset completes, ``reset_status`` reports
        "incomplete". The processed-event ledger is kept, so a stale
        redelivery of a pre-reset event cannot score again.

        @param confirmation_code: Must match the configured code
        @return: ResetResult with per-pass counts
        @raises InvalidConfirmation: on a wrong code
        @raises PartialReset: when a pass fails part way
        """
        if confirmation_code != self.confirmation_code:
            raise InvalidConfirmation("Invalid confirmation code")

        logger.info("Competition reset initiated")
        await self.repository.set_reset_marker("started")

        passes = (
            ("submissions", self.repository.delete_submissions),
            ("hints", self.repository.delete_hints),
            ("solves", self.repository.delete_solves),
            ("teams", self.repository.zero_team_aggregates),
            ("leaderboard", self.repository.delete_leaderboard_entries),
        )

        stats: Dict[str, int] = {}
        for stage, run_pass in passes:
            try:
                stats[stage] = await run_pass(self.batch_size)
            except StoreError as e:
                logger.error("Competition reset failed during %s pass: %s", stage, e)
                raise PartialReset(stage, e) from e
            await self.repository.set_reset_marker(stage)

        await self.repository.clear_reset_marker()
        self._publish("events", "teams", "leaderboard", reset=True)

        logger.info("Competition reset completed: %s", stats)
        return ResetResult(
            success=True,
            message="Competition has been reset successfully",
            stats={
                "submissionsDeleted": stats["submissions"],
                "hintsDeleted": stats["hints"],
                "teamsReset": stats["teams"],
                "leaderboardEntriesDeleted": stats["leaderboard"],
            },
        )

    async def reset_status(self) -> str:
        marker = await self.repository.get_reset_marker()
        return "complete" if marker is None else "incomplete"

    async def initialize_event(
        self,
        event_name: str,
        total_teams: int,
        total_groups: int,
        total_levels: int,
    ) -> EventConfig:
        """
        Store the event configuration.

        Keeps the current status and timestamps of an existing event.

        @raises InvalidEventConfig: if any total is not positive
        """
        if not event_name or not str(event_name).strip():
            raise InvalidEventConfig("event name is required")
        for name, value in (
            ("totalTeams", total_teams),
            ("totalGroups", total_groups),
            ("totalLevels", total_levels),
        ):
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise InvalidEventConfig(f"{name} must be a positive integer")

        existing = await self.repository.get_event_config()
        carried: Dict[str, Any] = {}
        if existing is not None:
            carried = existing.model_dump(
                include={"is_active", "status", "start_time", "end_time", "paused_at", "created_at"}
            )

        config = EventConfig(
            event_name=event_name.strip(),
            total_teams=total_teams,
            total_groups=total_groups,
            teams_per_group=math.ceil(total_teams / total_groups),
            total_levels=total_levels,
            **carried,
        )
        await self.repository.save_event_config(config)
        logger.info("Event initialized: %s", config.event_name)
        return config

    async def event_status(self) -> EventConfig:
        config = await self.repository.get_event_config()
        if config is None:
            # No event configured yet: inactive, preparation phase
            return EventConfig(
                event_name="",
                total_teams=0,
                total_groups=0,
                teams_per_group=0,
                total_levels=0,
            )
        return config

    async def _transition(self, **changes: Any) -> EventConfig:
        config = await self.event_status()
        updated = config.model_copy(update={**changes, "updated_at": now_ms()})
        await self.repository.save_event_config(updated)
        return updated

    async def start_event(self) -> EventConfig:
        config = await self._transition(is_active=True, status="running", start_time=now_ms())
        logger.info("Event started")
        return config

    async def pause_event(self) -> EventConfig:
        config = await self._transition(is_active=False, status="paused", paused_at=now_ms())
        logger.info("Event paused")
        return config

    async def stop_event(self) -> EventConfig:
        config = await self._transition(is_active=False, status="stopped", end_time=now_ms())
        logger.info("Event stopped")
        return config

    async def broadcast_announcement(
        self,
        message: str,
        priority: str = "normal",
    ) -> Announcement:
        announcement = Announcement(message=message, priority=priority)
        await self.repository.save_announcement(announcement)
        self._publish("announcements", **announcement.dump())
        logger.info("Announcement broadcast: %s", announcement.id)
        return announcement

    async def list_announcements(self, limit: int = 20) -> List[Announcement]:
        return await self.repository.list_announcements(limit)
