import os
import tempfile
import unittest
from typing import Any, Dict

from flagrank.aggregator import ScoreAggregator
from flagrank.bus import EventBus
from flagrank.config import CompetitionConfig
from flagrank.database import DatabaseManager
from flagrank.errors import StoreError
from flagrank.ingest import EventIngestor
from flagrank.leaderboard import LeaderboardProjector
from flagrank.models import Level, Team


def make_team(team_id: str, group_id: str = "g1", **fields: Any) -> Team:
    return Team(id=team_id, name=fields.pop("name", team_id.upper()), group_id=group_id, **fields)


def make_level(level_id: str, group_id: str = "g1", **fields: Any) -> Level:
    defaults: Dict[str, Any] = {
        "number": 1,
        "title": level_id,
        "base_points": 100,
        "hint_type": "points",
        "hints_available": 3,
        "point_deduction": 10,
    }
    defaults.update(fields)
    return Level(id=level_id, group_id=group_id, **defaults)


def submission(event_id: str, team_id: str, level_id: str, **fields: Any) -> Dict[str, Any]:
    payload = {
        "id": event_id,
        "teamId": team_id,
        "levelId": level_id,
        "status": "correct",
        "scoreAwarded": 100,
        "timeTaken": 60,
    }
    payload.update(fields)
    return payload


class FailingRepository:
    """Wraps a repository and raises StoreError from chosen operations."""

    def __init__(self, inner: DatabaseManager, *failing: str) -> None:
        self._inner = inner
        self.failing = set(failing)

    def __getattr__(self, name: str) -> Any:
        attr = getattr(self._inner, name)
        if name in self.failing:
            async def fail(*args: Any, **kwargs: Any) -> Any:
                raise StoreError(f"{name} failed")

            return fail
        return attr


class StoreTestCase(unittest.IsolatedAsyncioTestCase):
    """Fresh SQLite store, bus, aggregator, projector and ingestor per test."""

    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.config = CompetitionConfig.from_dict({"store": {"batch_size": 2}})
        self.db = DatabaseManager(os.path.join(self._tmp.name, "test.db"), self.config)
        await self.db.init_db()

        self.bus = EventBus(queue_size=64)
        self.aggregator = ScoreAggregator(self.db)
        self.projector = LeaderboardProjector(self.db, self.bus)
        self.ingestor = EventIngestor(self.db, self.aggregator, self.projector, self.bus)

    async def asyncTearDown(self) -> None:
        self.bus.close()
        self._tmp.cleanup()

    async def seed(self, *items: Any) -> None:
        for item in items:
            if isinstance(item, Team):
                await self.db.save_team(item)
            else:
                await self.db.save_level(item)
