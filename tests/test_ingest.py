import unittest

from flagrank.aggregator import ApplyOutcome
from flagrank.errors import HintUnavailable, ReferenceMissing
from flagrank.ingest import EventIngestor
from flagrank.leaderboard import LeaderboardProjector
from tests.helpers import FailingRepository, StoreTestCase, make_level, make_team, submission


class TestEventIngestor(StoreTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        await self.seed(
            make_team("X"),
            make_team("Y"),
            make_level("A", base_points=500, point_deduction=50, hints_available=2),
            make_level(
                "B", hint_type="time", time_penalty_minutes=5, point_deduction=0, hints_available=1
            ),
        )

    async def test_ingest_logs_applies_and_projects(self):
        async with self.bus.subscribe("teams", "events") as feed:
            result = await self.ingestor.ingest(submission("e1", "X", "A", scoreAwarded=500))
            topics = {(await feed.get(timeout=1)).topic, (await feed.get(timeout=1)).topic}

        self.assertEqual(result.outcome, ApplyOutcome.APPLIED)
        self.assertEqual(topics, {"teams", "events"})
        self.assertEqual(await self.db.count_submissions(), 1)
        stored = await self.db.list_leaderboard_entries()
        self.assertEqual([(e.id, e.score) for e in stored], [("X", 500)])

    async def test_redelivery_is_logged_once(self):
        first = await self.ingestor.ingest(submission("e1", "X", "A"))
        second = await self.ingestor.ingest(submission("e1", "X", "A"))

        self.assertEqual(first.outcome, ApplyOutcome.APPLIED)
        self.assertEqual(second.outcome, ApplyOutcome.DUPLICATE)
        self.assertEqual(await self.db.count_submissions(), 1)

    async def test_malformed_payload_reports_error(self):
        result = await self.ingestor.ingest({"id": "bad", "teamId": "X"})

        self.assertEqual(result.outcome, ApplyOutcome.SKIPPED)
        self.assertEqual(result.event_id, "bad")
        self.assertIn("error", result.as_dict())

    async def test_payload_without_id_is_rejected(self):
        payload = submission("x", "X", "A")
        del payload["id"]

        result = await self.ingestor.ingest(payload)

        self.assertEqual(result.outcome, ApplyOutcome.SKIPPED)
        self.assertEqual(await self.db.count_submissions(), 0)

    async def test_unknown_team_is_not_logged(self):
        result = await self.ingestor.ingest(submission("e1", "ghost", "A"))

        self.assertEqual(result.outcome, ApplyOutcome.SKIPPED)
        self.assertEqual(await self.db.count_submissions(), 0)

    async def test_log_failure_asks_for_retry(self):
        ingestor = EventIngestor(
            FailingRepository(self.db, "append_submission"),
            self.aggregator,
            self.projector,
            self.bus,
        )

        result = await ingestor.ingest(submission("e1", "X", "A"))

        self.assertEqual(result.outcome, ApplyOutcome.RETRY)
        self.assertEqual((await self.db.get_team("X")).score, 0)

    async def test_projection_failure_does_not_fail_ingest(self):
        projector = LeaderboardProjector(FailingRepository(self.db, "upsert_leaderboard_entry"))
        ingestor = EventIngestor(self.db, self.aggregator, projector, self.bus)

        result = await ingestor.ingest(submission("e1", "X", "A", scoreAwarded=200))

        self.assertEqual(result.outcome, ApplyOutcome.APPLIED)
        # The board still reflects the aggregate
        board = await self.projector.current()
        self.assertEqual(board[0].id, "X")
        self.assertEqual(board[0].score, 200)

    async def test_failed_refresh_of_projected_team_heals_on_read(self):
        await self.ingestor.ingest(submission("e1", "X", "A", scoreAwarded=100, submittedAt=1))
        await self.ingestor.ingest(submission("e2", "Y", "A", scoreAwarded=150, submittedAt=2))
        projector = LeaderboardProjector(FailingRepository(self.db, "upsert_leaderboard_entry"))
        ingestor = EventIngestor(self.db, self.aggregator, projector, self.bus)

        result = await ingestor.ingest(submission("e3", "X", "B", scoreAwarded=100, submittedAt=3))

        self.assertEqual(result.outcome, ApplyOutcome.APPLIED)
        board = await self.projector.current()
        self.assertEqual([(e.id, e.score) for e in board], [("X", 200), ("Y", 150)])
        stored = {e.id: e.score for e in await self.db.list_leaderboard_entries()}
        self.assertEqual(stored, {"X": 200, "Y": 150})

    async def test_record_submission_uses_hints_taken(self):
        await self.ingestor.use_hint("X", "A")
        await self.ingestor.use_hint("X", "A")

        result = await self.ingestor.record_submission("X", "A", "correct", time_taken=42)

        submissions = await self.db.list_submissions(team_id="X")
        team = await self.db.get_team("X")
        self.assertEqual(result.outcome, ApplyOutcome.APPLIED)
        self.assertEqual(submissions[0].score_awarded, 400)
        self.assertEqual(submissions[0].hints_used, 2)
        self.assertEqual((team.score, team.levels_completed, team.time_penalty), (400, 1, 0))

    async def test_time_hint_penalty_is_charged_once(self):
        await self.ingestor.use_hint("Y", "B")
        self.assertEqual((await self.db.get_team("Y")).time_penalty, 5)

        await self.ingestor.record_submission("Y", "B", "correct", time_taken=100)

        team = await self.db.get_team("Y")
        self.assertEqual((team.score, team.time_penalty, team.hints_used), (100, 5, 1))

    async def test_hints_run_out(self):
        await self.ingestor.use_hint("Y", "B")

        with self.assertRaises(HintUnavailable):
            await self.ingestor.use_hint("Y", "B")

    async def test_retried_hint_request_is_not_charged_twice(self):
        await self.ingestor.use_hint("Y", "B", event_id="h1")
        result = await self.ingestor.use_hint("Y", "B", event_id="h1")

        self.assertEqual(result.outcome, ApplyOutcome.DUPLICATE)
        self.assertEqual((await self.db.get_team("Y")).time_penalty, 5)

    async def test_hint_for_unknown_team(self):
        with self.assertRaises(ReferenceMissing):
            await self.ingestor.use_hint("ghost", "A")

    async def test_submission_for_unknown_level(self):
        with self.assertRaises(ReferenceMissing):
            await self.ingestor.record_submission("X", "nope", "correct", time_taken=1)


if __name__ == "__main__":
    unittest.main()
