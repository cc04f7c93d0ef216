import unittest

from flagrank.scoring import build_submission, calculate_final_score
from tests.helpers import make_level


class TestCalculateFinalScore(unittest.TestCase):
    def test_points_hints_deduct_per_hint(self):
        level = make_level("A", base_points=500, point_deduction=50)

        breakdown = calculate_final_score(level, 2)

        self.assertEqual(breakdown.final_score, 400)
        self.assertEqual(breakdown.point_deduction, 100)
        self.assertEqual(breakdown.hint_time_penalty, 0)

    def test_points_deduction_never_goes_below_zero(self):
        level = make_level("A", base_points=100, point_deduction=60)

        self.assertEqual(calculate_final_score(level, 3).final_score, 0)

    def test_time_hints_keep_full_points(self):
        level = make_level(
            "B", base_points=300, hint_type="time", time_penalty_minutes=5, point_deduction=0
        )

        breakdown = calculate_final_score(level, 2)

        self.assertEqual(breakdown.final_score, 300)
        self.assertEqual(breakdown.hint_time_penalty, 10)


class TestBuildSubmission(unittest.TestCase):
    def test_correct_submission_after_two_points_hints(self):
        level = make_level("A", base_points=500, point_deduction=50)

        event = build_submission("X", level, "correct", hints_used=2, time_taken=42)

        self.assertEqual(event.score_awarded, 400)
        self.assertEqual(event.time_penalty, 0)
        self.assertEqual(event.hints_used, 2)
        self.assertEqual(event.time_taken, 42)
        self.assertTrue(event.id)

    def test_incorrect_submission_awards_nothing(self):
        level = make_level("A", base_points=500)

        event = build_submission("X", level, "incorrect", hints_used=0, time_taken=5)

        self.assertEqual(event.score_awarded, 0)
        self.assertFalse(event.is_correct)

    def test_explicit_id_and_timestamp_are_kept(self):
        level = make_level("A")

        event = build_submission(
            "X", level, "correct", 0, 10, submitted_at=1234, event_id="evt-1"
        )

        self.assertEqual(event.id, "evt-1")
        self.assertEqual(event.submitted_at, 1234)


if __name__ == "__main__":
    unittest.main()
