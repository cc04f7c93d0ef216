"""
Leaderboard Projector.

The stored projection is a lagging cache of the team aggregates: entries are
upserted after each applied event and can be re-derived at any time. Ranks
are never stored; they come from a full sort on every read.
"""

import logging
import math
from typing import Iterable, List, Optional, Sequence, Union

from .bus import EventBus, LiveView
from .errors import StoreError
from .models import LeaderboardEntry, Team
from .repository import CompetitionRepository

logger = logging.getLogger(__name__)


def ranking_key(entry: LeaderboardEntry):
    """
    Total order: score desc, levels desc, penalty asc, last submission asc.

    Entries that never scored sort after those that did; the team id settles
    anything left so the order does not depend on input order.
    """
    last = entry.last_submission_at
    return (
        -(entry.score or 0),
        -(entry.levels_completed or 0),
        entry.total_time_penalty or 0,
        math.inf if last is None else last,
        entry.id,
    )


def entry_from_team(team: Team) -> LeaderboardEntry:
    return LeaderboardEntry(
        id=team.id,
        team_name=team.name or "",
        group_id=team.group_id,
        score=team.score or 0,
        levels_completed=team.levels_completed or 0,
        total_time_penalty=team.time_penalty or 0,
        last_submission_at=team.last_submission_at,
    )


def rank_entries(entries: Iterable[LeaderboardEntry]) -> List[LeaderboardEntry]:
    ordered = sorted(entries, key=ranking_key)
    return [
        entry.model_copy(update={"rank": position})
        for position, entry in enumerate(ordered, 1)
    ]


class LeaderboardProjector:
    def __init__(
        self,
        repository: CompetitionRepository,
        bus: Optional[EventBus] = None,
    ) -> None:
        self.repository = repository
        self.bus = bus

    @staticmethod
    def project(teams: Sequence[Union[Team, LeaderboardEntry]]) -> List[LeaderboardEntry]:
        """
        Ranked leaderboard for ``teams``. Pure; safe to call from any feed handler.

        Accepts team aggregates or already-projected entries.
        """
        entries = [
            item if isinstance(item, LeaderboardEntry) else entry_from_team(item)
            for item in teams
        ]
        return rank_entries(entries)

    async def refresh_team(self, team_id: str) -> Optional[LeaderboardEntry]:
        """
        Copy one team's aggregate into the projection.

        Errors propagate so callers can decide; the projection heals on the
        next refresh or read.
        """
        team = await self.repository.get_team(team_id)
        if team is None:
            return None

        entry = entry_from_team(team)
        await self.repository.upsert_leaderboard_entry(entry)
        if self.bus is not None:
            self.bus.publish("leaderboard", {"teamId": team_id})
        return entry

    async def rebuild(self) -> int:
        """
        Re-derive every projection entry from the team aggregates.

        @return: Number of entries written
        """
        teams = await self.repository.list_teams()
        entries = [entry_from_team(team) for team in teams]
        await self.repository.upsert_leaderboard_entries(entries)
        logger.info("Synced %d teams to leaderboard", len(entries))

        if self.bus is not None:
            self.bus.publish("leaderboard", {"rebuilt": len(entries)})
        return len(entries)

    async def current(
        self,
        group_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[LeaderboardEntry]:
        """
        Ranked leaderboard, read from the projection.

        Teams without a projection entry yet are derived from their
        aggregates, so an empty projection gives the same board as a full
        one. Entries that disagree with their aggregate are replaced by it
        and written back. Never raises: if the teams cannot be read the
        result is an empty list.

        @param group_id: Restrict to one group; ranks are within the group
        @param limit: Truncate after ranking
        """
        try:
            teams = await self.repository.list_teams(group_id)
        except StoreError as e:
            logger.warning("Leaderboard unavailable: %s", e)
            return []

        try:
            entries = await self.repository.list_leaderboard_entries(group_id)
        except StoreError as e:
            logger.warning("Leaderboard projection unreadable, using aggregates: %s", e)
            entries = []

        projected = {entry.id: entry for entry in entries}
        board = []
        stale = []
        for team in teams:
            fresh = entry_from_team(team)
            entry = projected.get(team.id)
            if entry is not None and entry != fresh:
                stale.append(fresh)
            board.append(fresh)

        if stale:
            logger.info("Repairing %d stale leaderboard entries", len(stale))
            try:
                await self.repository.upsert_leaderboard_entries(stale)
            except StoreError as e:
                logger.warning("Leaderboard repair failed: %s", e)

        ranked = self.project(board)
        return ranked[:limit] if limit is not None else ranked


class LeaderboardView(LiveView):
    """Keeps a ranked leaderboard current off the team and projection feeds."""

    topics = ("teams", "events", "leaderboard")

    def __init__(
        self,
        bus: EventBus,
        projector: LeaderboardProjector,
        group_id: Optional[str] = None,
    ) -> None:
        super().__init__(bus)
        self.projector = projector
        self.group_id = group_id
        self.entries: List[LeaderboardEntry] = []

    async def refresh(self) -> None:
        self.entries = await self.projector.current(self.group_id)
