import unittest

from flagrank.anomaly import AnomalyDetector, AnomalyThresholds, detect
from flagrank.models import SubmissionRecorded, TeamRef
from tests.helpers import FailingRepository, StoreTestCase, make_level, make_team, submission

TEAMS = [TeamRef(id="a", name="Alpha"), TeamRef(id="b", name="Bravo")]


def attempt(event_id, team_id, level_id, status="correct", time_taken=300, at=0):
    return SubmissionRecorded.model_validate(
        submission(
            event_id, team_id, level_id, status=status, timeTaken=time_taken, submittedAt=at
        )
    )


class TestDetect(unittest.TestCase):
    def test_fast_solves_flag_team_above_limit(self):
        window = [attempt(f"f{i}", "a", f"L{i}", time_taken=10, at=i * 600_000) for i in range(3)]

        findings = detect(window, TEAMS)

        self.assertEqual(len(findings), 1)
        self.assertEqual(findings[0].type, "fast_solves")
        self.assertEqual(findings[0].severity, "high")
        self.assertEqual(findings[0].team_name, "Alpha")

    def test_fast_solves_at_limit_are_not_flagged(self):
        window = [attempt(f"f{i}", "a", f"L{i}", time_taken=10, at=i * 600_000) for i in range(2)]

        self.assertEqual(detect(window, TEAMS), [])

    def test_excessive_wrong_attempts_per_level(self):
        window = [
            attempt(f"w{i}", "b", "L1", status="incorrect", at=i * 600_000) for i in range(11)
        ]
        window += [attempt(f"x{i}", "b", "L2", status="incorrect") for i in range(10)]

        findings = detect(window, TEAMS)

        self.assertEqual([f.type for f in findings], ["excessive_attempts"])
        self.assertEqual(findings[0].severity, "medium")
        self.assertIn("11 wrong attempts", findings[0].description)
        self.assertEqual(findings[0].team_id, "b")

    def test_simultaneous_solves_are_unattributed(self):
        window = [
            attempt("s1", "a", "L1", at=1_000),
            attempt("s2", "b", "L1", at=2_000),
            attempt("s3", "c", "L1", at=3_000),
            attempt("s4", "a", "L2", at=4_000),
        ]

        findings = detect(window, TEAMS)

        self.assertEqual([f.type for f in findings], ["simultaneous_solves"])
        self.assertIsNone(findings[0].team_id)

    def test_simultaneous_solves_need_enough_teams(self):
        window = [attempt(f"s{i}", "a" if i % 2 else "b", f"L{i}", at=i) for i in range(4)]

        self.assertEqual(detect(window, TEAMS), [])

    def test_unknown_team_name(self):
        window = [attempt(f"f{i}", "ghost", f"L{i}", time_taken=1, at=i * 600_000) for i in range(3)]

        findings = detect(window, TEAMS)

        self.assertEqual(findings[0].team_name, "Unknown")

    def test_thresholds_are_configurable(self):
        window = [attempt(f"f{i}", "a", f"L{i}", time_taken=50, at=i * 600_000) for i in range(2)]
        thresholds = AnomalyThresholds(fast_solve_seconds=60, fast_solve_limit=1)

        findings = detect(window, TEAMS, thresholds)

        self.assertEqual([f.type for f in findings], ["fast_solves"])


class TestAnomalyDetector(StoreTestCase):
    async def test_scan_reads_recent_window(self):
        await self.seed(make_team("a", name="Alpha"), make_level("L1"))
        for i in range(12):
            await self.ingestor.ingest(
                submission(f"w{i}", "a", "L1", status="incorrect", submittedAt=i * 600_000)
            )

        detector = AnomalyDetector(self.db, window_size=11)
        findings = await detector.scan()

        self.assertEqual(len(findings), 1)
        self.assertEqual(findings[0].team_name, "Alpha")

        detector = AnomalyDetector(self.db, window_size=10)
        self.assertEqual(await detector.scan(), [])

    async def test_scan_store_failure_is_empty(self):
        detector = AnomalyDetector(FailingRepository(self.db, "recent_submissions"))

        self.assertEqual(await detector.scan(), [])


if __name__ == "__main__":
    unittest.main()
