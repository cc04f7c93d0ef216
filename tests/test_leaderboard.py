import random
import unittest

from flagrank.leaderboard import (
    LeaderboardProjector,
    LeaderboardView,
    ranking_key,
)
from flagrank.models import LeaderboardEntry
from tests.helpers import FailingRepository, StoreTestCase, make_level, make_team, submission


def entry(team_id, score, levels, penalty=0, last=None):
    return LeaderboardEntry(
        id=team_id,
        team_name=team_id,
        score=score,
        levels_completed=levels,
        total_time_penalty=penalty,
        last_submission_at=last,
    )


class TestProject(unittest.TestCase):
    def test_tie_breakers(self):
        entries = [
            entry("p", 300, 2, last=100),
            entry("q", 300, 3, last=200),
            entry("r", 250, 1, last=500),
            entry("s", 250, 1, last=400),
        ]

        ranked = LeaderboardProjector.project(entries)

        self.assertEqual([e.id for e in ranked], ["q", "p", "s", "r"])
        self.assertEqual([e.rank for e in ranked], [1, 2, 3, 4])

    def test_lower_penalty_ranks_higher(self):
        ranked = LeaderboardProjector.project(
            [entry("a", 100, 1, penalty=10), entry("b", 100, 1, penalty=5)]
        )

        self.assertEqual([e.id for e in ranked], ["b", "a"])

    def test_adjacent_pairs_follow_comparator(self):
        rng = random.Random(7)
        entries = [
            entry(
                f"t{i}",
                rng.choice([0, 100, 200]),
                rng.randint(0, 3),
                rng.choice([0, 5]),
                rng.choice([None, 1000, 2000]),
            )
            for i in range(40)
        ]

        ranked = LeaderboardProjector.project(entries)

        for above, below in zip(ranked, ranked[1:]):
            self.assertLessEqual(ranking_key(above), ranking_key(below))
            self.assertEqual(below.rank, above.rank + 1)

    def test_order_does_not_depend_on_input_order(self):
        entries = [entry("a", 100, 1), entry("b", 100, 1), entry("c", 100, 1)]

        forward = [e.id for e in LeaderboardProjector.project(entries)]
        backward = [e.id for e in LeaderboardProjector.project(list(reversed(entries)))]

        self.assertEqual(forward, backward)

    def test_accepts_team_aggregates(self):
        ranked = LeaderboardProjector.project(
            [make_team("a", score=10), make_team("b", score=20)]
        )

        self.assertEqual([e.id for e in ranked], ["b", "a"])
        self.assertEqual(ranked[0].team_name, "B")


class TestLeaderboardProjector(StoreTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        await self.seed(
            make_team("a", score=300, levels_completed=2),
            make_team("b", score=500, levels_completed=3),
            make_team("c", group_id="g2", score=100, levels_completed=1),
        )

    async def test_empty_projection_falls_back_to_aggregates(self):
        ranked = await self.projector.current()

        self.assertEqual([e.id for e in ranked], ["b", "a", "c"])
        self.assertEqual(await self.db.list_leaderboard_entries(), [])

    async def test_rebuild_then_read_from_projection(self):
        count = await self.projector.rebuild()

        self.assertEqual(count, 3)
        self.assertEqual(len(await self.db.list_leaderboard_entries()), 3)
        ranked = await self.projector.current(group_id="g1", limit=1)
        self.assertEqual([(e.id, e.rank) for e in ranked], [("b", 1)])

    async def test_refresh_team_copies_aggregate(self):
        await self.seed(make_level("L1"))
        await self.aggregator.apply(submission("e1", "a", "L1", scoreAwarded=250))

        await self.projector.refresh_team("a")

        stored = {e.id: e for e in await self.db.list_leaderboard_entries()}
        self.assertEqual(stored["a"].score, 550)

    async def test_partial_projection_keeps_unprojected_teams(self):
        await self.projector.refresh_team("c")

        ranked = await self.projector.current()

        self.assertEqual([e.id for e in ranked], ["b", "a", "c"])

    async def test_unreadable_teams_yield_empty_leaderboard(self):
        projector = LeaderboardProjector(FailingRepository(self.db, "list_teams"))

        self.assertEqual(await projector.current(), [])

    async def test_unreadable_projection_falls_back_to_aggregates(self):
        await self.projector.rebuild()
        projector = LeaderboardProjector(
            FailingRepository(self.db, "list_leaderboard_entries")
        )

        ranked = await projector.current()

        self.assertEqual([e.id for e in ranked], ["b", "a", "c"])

    async def test_stale_entry_is_repaired_on_read(self):
        await self.projector.rebuild()
        await self.seed(make_level("L1"))
        await self.aggregator.apply(submission("e1", "c", "L1", scoreAwarded=900))

        ranked = await self.projector.current()

        self.assertEqual((ranked[0].id, ranked[0].score), ("c", 1000))
        stored = {e.id: e for e in await self.db.list_leaderboard_entries()}
        self.assertEqual(stored["c"].score, 1000)
        self.assertEqual(stored["c"].levels_completed, 2)

    async def test_view_follows_applied_events(self):
        await self.seed(make_level("L1"))

        async with LeaderboardView(self.bus, self.projector) as view:
            self.assertEqual(view.entries[0].id, "b")
            version = view.version

            await self.ingestor.ingest(submission("e1", "c", "L1", scoreAwarded=900))
            await view.wait_for_version(version + 1, timeout=5)

            self.assertEqual(view.entries[0].id, "c")

        self.assertFalse(view.running)


if __name__ == "__main__":
    unittest.main()
