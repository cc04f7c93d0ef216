from flagrank.errors import ReferenceMissing
from flagrank.queries import CompetitionQueries
from tests.helpers import StoreTestCase, make_level, make_team, submission


class TestCompetitionQueries(StoreTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.queries = CompetitionQueries(self.db, self.projector)
        await self.seed(
            make_team("a", name="Alpha"),
            make_team("b", name="Bravo"),
            make_team("c", group_id="g2"),
            make_level("L1", number=1, base_points=200),
            make_level("L2", number=2, base_points=300),
            make_level("M1", group_id="g2"),
        )
        await self.ingestor.ingest(submission("1", "a", "L1", scoreAwarded=200, timeTaken=100, submittedAt=1))
        await self.ingestor.ingest(submission("2", "a", "L2", status="incorrect", scoreAwarded=0, timeTaken=30, submittedAt=2))
        await self.ingestor.ingest(submission("3", "a", "L2", status="incorrect", scoreAwarded=0, timeTaken=30, submittedAt=3))
        await self.ingestor.ingest(submission("4", "b", "L1", scoreAwarded=200, timeTaken=80, submittedAt=4))
        await self.ingestor.ingest(submission("5", "b", "L2", scoreAwarded=300, timeTaken=120, submittedAt=5))
        await self.ingestor.use_hint("a", "L2")

    async def test_team_statistics(self):
        stats = await self.queries.get_team_statistics("a")

        self.assertEqual(stats["teamName"], "Alpha")
        self.assertEqual(stats["score"], 200)
        self.assertEqual(stats["levelsCompleted"], 1)
        self.assertEqual(stats["totalHintsUsed"], 1)
        self.assertEqual(stats["totalTimeTaken"], 160)
        self.assertEqual(stats["averageTimePerLevel"], 53.33)
        self.assertEqual(stats["rank"], 2)
        self.assertEqual(stats["submissions"], 3)

    async def test_team_statistics_unknown_team(self):
        with self.assertRaises(ReferenceMissing):
            await self.queries.get_team_statistics("ghost")

    async def test_group_overview(self):
        overview = await self.queries.group_overview("g1")

        self.assertEqual([t["id"] for t in overview["teams"]], ["a", "b"])
        self.assertEqual(overview["solveMatrix"], [[1, 0], [1, 1]])
        self.assertEqual([e["id"] for e in overview["leaderboard"]], ["b", "a"])
        self.assertEqual(overview["stats"]["totalSolves"], 3)
        self.assertEqual(overview["stats"]["completionRate"], 75.0)
        self.assertEqual(overview["stats"]["averageScore"], 350)

    async def test_team_detail(self):
        detail = await self.queries.team_detail("a")

        self.assertEqual(detail["solvedLevels"], ["L1"])
        self.assertEqual(detail["wrongAttempts"], {"L2": 2})
        self.assertEqual(len(detail["hints"]), 1)
        self.assertEqual(detail["metrics"]["accuracy"], 33.3)

    async def test_submission_logs_are_paginated_newest_first(self):
        page = await self.queries.submission_logs(limit=2, offset=1)

        self.assertEqual(page["total"], 5)
        self.assertEqual([s["id"] for s in page["logs"]], ["4", "3"])

    async def test_submission_logs_for_one_team(self):
        page = await self.queries.submission_logs(limit=2, team_id="a")

        self.assertEqual(page["total"], 3)
        self.assertEqual([s["id"] for s in page["logs"]], ["3", "2"])

    async def test_platform_stats(self):
        stats = await self.queries.platform_stats()

        self.assertEqual(stats["totalTeams"], 3)
        self.assertEqual(stats["activeTeams"], 2)
        self.assertEqual(stats["totalSubmissions"], 5)
        self.assertEqual(stats["correctSubmissions"], 3)
        self.assertEqual(stats["totalScore"], 700)
        self.assertEqual(stats["completionRate"], round(300 / 9, 1))
