"""
Anomaly detection over recent submissions.

Findings are advisory: nothing is stored and no action is taken on them.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from .errors import StoreError
from .models import AnomalyFinding, SubmissionRecorded, TeamRef
from .repository import CompetitionRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnomalyThresholds:
    fast_solve_seconds: float = 30
    # more than this many fast solves flags the team
    fast_solve_limit: int = 2
    wrong_attempt_limit: int = 10
    simultaneous_bucket_seconds: int = 60
    simultaneous_solve_limit: int = 3
    simultaneous_team_limit: int = 2


def _fast_solves(
    by_team: Dict[str, List[SubmissionRecorded]],
    names: Dict[str, str],
    thresholds: AnomalyThresholds,
) -> List[AnomalyFinding]:
    findings = []
    for team_id, submissions in by_team.items():
        fast = [
            s
            for s in submissions
            if s.is_correct and (s.time_taken or 0) < thresholds.fast_solve_seconds
        ]
        if len(fast) > thresholds.fast_solve_limit:
            findings.append(
                AnomalyFinding(
                    type="fast_solves",
                    description=(
                        f"{len(fast)} solves completed in less than "
                        f"{thresholds.fast_solve_seconds:g} seconds"
                    ),
                    severity="high",
                    team_id=team_id,
                    team_name=names.get(team_id, "Unknown"),
                )
            )
    return findings


def _excessive_attempts(
    by_team: Dict[str, List[SubmissionRecorded]],
    names: Dict[str, str],
    thresholds: AnomalyThresholds,
) -> List[AnomalyFinding]:
    findings = []
    for team_id, submissions in by_team.items():
        wrong_by_level: Dict[str, int] = defaultdict(int)
        for s in submissions:
            if s.status == "incorrect":
                wrong_by_level[s.level_id] += 1

        for level_id, count in wrong_by_level.items():
            if count > thresholds.wrong_attempt_limit:
                findings.append(
                    AnomalyFinding(
                        type="excessive_attempts",
                        description=f"{count} wrong attempts on level {level_id}",
                        severity="medium",
                        team_id=team_id,
                        team_name=names.get(team_id, "Unknown"),
                    )
                )
    return findings


def _simultaneous_solves(
    window: Sequence[SubmissionRecorded],
    thresholds: AnomalyThresholds,
) -> List[AnomalyFinding]:
    bucket_ms = thresholds.simultaneous_bucket_seconds * 1000
    buckets: Dict[int, List[SubmissionRecorded]] = defaultdict(list)
    for s in window:
        if s.is_correct:
            buckets[s.submitted_at // bucket_ms].append(s)

    findings = []
    for bucket in sorted(buckets):
        solves = buckets[bucket]
        if len(solves) <= thresholds.simultaneous_solve_limit:
            continue
        teams = {s.team_id for s in solves}
        if len(teams) > thresholds.simultaneous_team_limit:
            # Cross-team pattern: no single team is named
            findings.append(
                AnomalyFinding(
                    type="simultaneous_solves",
                    description=(
                        f"{len(solves)} solves from {len(teams)} teams within "
                        f"{thresholds.simultaneous_bucket_seconds} seconds"
                    ),
                    severity="medium",
                )
            )
    return findings


def detect(
    window: Sequence[SubmissionRecorded],
    teams: Sequence[TeamRef],
    thresholds: Optional[AnomalyThresholds] = None,
) -> List[AnomalyFinding]:
    """
    Run the fast-solve, excessive-attempt and simultaneous-solve rules.

    Pure and stateless. Findings for single teams come in team order of first
    appearance in ``window``; unknown team ids are reported as "Unknown".
    """
    thresholds = thresholds or AnomalyThresholds()
    names = {team.id: team.name for team in teams}

    by_team: Dict[str, List[SubmissionRecorded]] = defaultdict(list)
    for s in window:
        by_team[s.team_id].append(s)

    return (
        _fast_solves(by_team, names, thresholds)
        + _excessive_attempts(by_team, names, thresholds)
        + _simultaneous_solves(window, thresholds)
    )


class AnomalyDetector:
    def __init__(
        self,
        repository: CompetitionRepository,
        thresholds: Optional[AnomalyThresholds] = None,
        window_size: int = 200,
    ) -> None:
        self.repository = repository
        self.thresholds = thresholds or AnomalyThresholds()
        self.window_size = window_size

    async def scan(self) -> List[AnomalyFinding]:
        """Run ``detect`` over the most recent submissions. Empty on store failure."""
        try:
            window = await self.repository.recent_submissions(self.window_size)
            teams = await self.repository.list_teams()
        except StoreError as e:
            logger.warning("Anomaly scan skipped: %s", e)
            return []

        findings = detect(window, teams, self.thresholds)
        if findings:
            logger.info("Anomaly scan: %d finding(s)", len(findings))
        return findings
