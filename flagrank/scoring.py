"""
Score calculation for a single submission.
"""

from dataclasses import dataclass
from typing import Optional

from .models import Level, SubmissionRecorded, new_event_id, now_ms


@dataclass(frozen=True)
class ScoreBreakdown:
    final_score: int
    point_deduction: int
    # Informational: already charged to the team by the HintUsed events
    hint_time_penalty: int


def calculate_final_score(level: Level, hints_used: int) -> ScoreBreakdown:
    """
    Points awarded for solving ``level`` after taking ``hints_used`` hints.

    Points-hint levels lose ``point_deduction`` per hint, never going below
    zero. Time-hint levels keep their full base points; their cost is time.
    """
    hints_used = max(0, int(hints_used))

    if level.hint_type == "points":
        deduction = hints_used * level.point_deduction
        return ScoreBreakdown(
            final_score=max(0, level.base_points - deduction),
            point_deduction=deduction,
            hint_time_penalty=0,
        )

    return ScoreBreakdown(
        final_score=level.base_points,
        point_deduction=0,
        hint_time_penalty=hints_used * level.time_penalty_minutes,
    )


def build_submission(
    team_id: str,
    level: Level,
    status: str,
    hints_used: int,
    time_taken: float,
    submitted_at: Optional[int] = None,
    event_id: Optional[str] = None,
) -> SubmissionRecorded:
    """
    Turn a scored attempt into the event that goes into the log.

    Incorrect attempts award nothing. ``time_penalty`` stays zero: hint time
    penalties reach the team through HintUsed, never through the submission.
    """
    breakdown = calculate_final_score(level, hints_used)

    return SubmissionRecorded(
        id=event_id or new_event_id(),
        team_id=team_id,
        level_id=level.id,
        status=status,
        score_awarded=breakdown.final_score if status == "correct" else 0,
        time_penalty=0,
        time_taken=max(0.0, float(time_taken)),
        hints_used=max(0, int(hints_used)),
        submitted_at=submitted_at if submitted_at is not None else now_ms(),
    )
