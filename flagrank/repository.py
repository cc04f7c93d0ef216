from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

from .models import (
    Announcement,
    EventConfig,
    HintUsed,
    LeaderboardEntry,
    Level,
    SubmissionRecorded,
    Team,
)


@dataclass(frozen=True)
class AggregateDelta:
    """Additive change to one team aggregate, applied at most once per event id."""

    score: int = 0
    levels_completed: int = 0
    time_penalty: int = 0
    hints_used: int = 0
    last_submission_at: Optional[int] = None
    # Level credited by this change; a level is credited once per team
    solved_level_id: Optional[str] = None

    def is_empty(self) -> bool:
        return (
            self.score == 0
            and self.levels_completed == 0
            and self.time_penalty == 0
            and self.hints_used == 0
            and self.last_submission_at is None
            and self.solved_level_id is None
        )


class CompetitionRepository(ABC):
    """Everything the scoring core reads from or writes to the store."""

    # teams and levels

    @abstractmethod
    async def save_team(self, team: Team) -> None:
        pass

    @abstractmethod
    async def get_team(self, team_id: str) -> Optional[Team]:
        pass

    @abstractmethod
    async def list_teams(self, group_id: Optional[str] = None) -> List[Team]:
        pass

    @abstractmethod
    async def save_level(self, level: Level) -> None:
        pass

    @abstractmethod
    async def get_level(self, level_id: str) -> Optional[Level]:
        pass

    @abstractmethod
    async def list_levels(self, group_id: Optional[str] = None) -> List[Level]:
        pass

    # event log

    @abstractmethod
    async def append_submission(self, event: SubmissionRecorded) -> bool:
        """Append to the log; False when the id is already logged."""

    @abstractmethod
    async def append_hint(self, event: HintUsed) -> bool:
        """Append to the log; False when the id is already logged."""

    @abstractmethod
    async def list_submissions(
        self,
        team_id: Optional[str] = None,
        level_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[SubmissionRecorded]:
        pass

    @abstractmethod
    async def recent_submissions(
        self,
        limit: int,
        offset: int = 0,
    ) -> List[SubmissionRecorded]:
        """Newest first."""

    @abstractmethod
    async def count_submissions(self) -> int:
        pass

    @abstractmethod
    async def list_hints(
        self,
        team_id: Optional[str] = None,
        level_id: Optional[str] = None,
    ) -> List[HintUsed]:
        pass

    # team aggregate

    @abstractmethod
    async def is_processed(self, event_id: str) -> bool:
        pass

    @abstractmethod
    async def apply_team_delta(
        self,
        event_id: str,
        kind: str,
        team_id: str,
        delta: AggregateDelta,
    ) -> bool:
        """
        Record ``event_id`` as processed and apply ``delta`` in one transaction.

        Returns False when the delta credits a level the team already solved
        (the event is still recorded as processed). Raises DuplicateEvent when
        the id was processed before and ReferenceMissing when the team row is
        gone; neither leaves any change behind.
        """

    # leaderboard projection

    @abstractmethod
    async def upsert_leaderboard_entry(self, entry: LeaderboardEntry) -> None:
        pass

    @abstractmethod
    async def upsert_leaderboard_entries(self, entries: List[LeaderboardEntry]) -> None:
        pass

    @abstractmethod
    async def list_leaderboard_entries(
        self,
        group_id: Optional[str] = None,
    ) -> List[LeaderboardEntry]:
        pass

    # reset passes; each returns the number of rows touched and is idempotent

    @abstractmethod
    async def delete_submissions(self, batch_size: int) -> int:
        pass

    @abstractmethod
    async def delete_hints(self, batch_size: int) -> int:
        pass

    @abstractmethod
    async def delete_solves(self, batch_size: int) -> int:
        pass

    @abstractmethod
    async def zero_team_aggregates(self, batch_size: int) -> int:
        pass

    @abstractmethod
    async def delete_leaderboard_entries(self, batch_size: int) -> int:
        pass

    @abstractmethod
    async def set_reset_marker(self, stage: str) -> None:
        pass

    @abstractmethod
    async def get_reset_marker(self) -> Optional[str]:
        pass

    @abstractmethod
    async def clear_reset_marker(self) -> None:
        pass

    # event configuration and announcements

    @abstractmethod
    async def save_event_config(self, config: EventConfig) -> None:
        pass

    @abstractmethod
    async def get_event_config(self) -> Optional[EventConfig]:
        pass

    @abstractmethod
    async def save_announcement(self, announcement: Announcement) -> None:
        pass

    @abstractmethod
    async def list_announcements(self, limit: int = 20) -> List[Announcement]:
        pass
