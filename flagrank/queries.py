"""
Read surfaces for dashboards: team statistics, group overview, team detail,
submission logs and platform-wide stats.
"""

from collections import defaultdict
from typing import Any, Dict, List, Optional

from .errors import ReferenceMissing
from .leaderboard import LeaderboardProjector
from .repository import CompetitionRepository
from .solve_matrix import materialize


def _ratio(part: float, whole: float, digits: int = 2) -> float:
    return round(part / whole, digits) if whole else 0


class CompetitionQueries:
    def __init__(
        self,
        repository: CompetitionRepository,
        projector: LeaderboardProjector,
    ) -> None:
        self.repository = repository
        self.projector = projector

    async def get_team_statistics(self, team_id: str) -> Dict[str, Any]:
        """
        Per-team statistics.

        Times cover every attempt, not just solves. The rank is the team's
        position in the full, unfiltered leaderboard.

        @param team_id: Team to describe
        @return: Dictionary of statistics; ``submissions`` is the attempt count
        @raises ReferenceMissing: when the team does not exist
        """
        team = await self.repository.get_team(team_id)
        if team is None:
            raise ReferenceMissing("team", team_id)

        submissions = await self.repository.list_submissions(team_id=team_id)
        hints = await self.repository.list_hints(team_id=team_id)
        leaderboard = await self.projector.current()

        total_time = sum(s.time_taken for s in submissions)

        rank = None
        for entry in leaderboard:
            if entry.id == team_id:
                rank = entry.rank
                break

        return {
            "teamId": team.id,
            "teamName": team.name,
            "score": team.score,
            "levelsCompleted": team.levels_completed,
            "totalHintsUsed": len(hints),
            "totalTimeTaken": total_time,
            "averageTimePerLevel": _ratio(total_time, len(submissions)),
            "rank": rank,
            "submissions": len(submissions),
        }

    async def group_overview(self, group_id: str) -> Dict[str, Any]:
        """Teams, levels, solve matrix, leaderboard and aggregate stats for one group."""
        teams = await self.repository.list_teams(group_id)
        levels = await self.repository.list_levels(group_id)
        correct = await self.repository.list_submissions(status="correct")
        matrix = materialize(teams, levels, correct)
        leaderboard = await self.projector.current(group_id)

        total_solves = sum(sum(row) for row in matrix)
        cells = len(teams) * len(levels)

        return {
            "groupId": group_id,
            "teams": [team.dump() for team in teams],
            "levels": [level.dump() for level in levels],
            "solveMatrix": matrix,
            "leaderboard": [entry.dump() for entry in leaderboard],
            "stats": {
                "totalTeams": len(teams),
                "totalLevels": len(levels),
                "totalSolves": total_solves,
                "completionRate": _ratio(total_solves * 100, cells, 1),
                "averageScore": _ratio(sum(t.score for t in teams), len(teams)),
            },
        }

    async def team_detail(self, team_id: str) -> Dict[str, Any]:
        """
        Solved levels, wrong attempts per level, hints and metrics for one team.

        @raises ReferenceMissing: when the team does not exist
        """
        team = await self.repository.get_team(team_id)
        if team is None:
            raise ReferenceMissing("team", team_id)

        submissions = await self.repository.list_submissions(team_id=team_id)
        hints = await self.repository.list_hints(team_id=team_id)

        solved: List[str] = []
        wrong_attempts: Dict[str, int] = defaultdict(int)
        correct = 0
        for s in submissions:
            if s.is_correct:
                correct += 1
                if s.level_id not in solved:
                    solved.append(s.level_id)
            else:
                wrong_attempts[s.level_id] += 1

        return {
            "team": team.dump(),
            "solvedLevels": solved,
            "wrongAttempts": dict(wrong_attempts),
            "hints": [hint.dump() for hint in hints],
            "metrics": {
                "totalSubmissions": len(submissions),
                "correctSubmissions": correct,
                "accuracy": _ratio(correct * 100, len(submissions), 1),
                "hintsUsed": team.hints_used,
                "timePenalty": team.time_penalty,
            },
        }

    async def submission_logs(
        self,
        limit: int = 50,
        offset: int = 0,
        team_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Paginated submission log, newest first.

        @param limit: Page size
        @param offset: Number of newest events to skip
        @param team_id: Restrict to one team's submissions
        """
        if team_id is None:
            page = await self.repository.recent_submissions(limit, offset)
            total = await self.repository.count_submissions()
        else:
            history = await self.repository.list_submissions(team_id=team_id)
            history.reverse()
            page = history[offset:offset + limit]
            total = len(history)

        return {
            "logs": [s.dump() for s in page],
            "total": total,
            "limit": limit,
            "offset": offset,
        }

    async def platform_stats(self) -> Dict[str, Any]:
        teams = await self.repository.list_teams()
        levels = await self.repository.list_levels()
        total_submissions = await self.repository.count_submissions()
        correct = await self.repository.list_submissions(status="correct")

        total_score = sum(team.score for team in teams)
        solved_pairs = {(s.team_id, s.level_id) for s in correct}

        return {
            "totalTeams": len(teams),
            "activeTeams": sum(1 for team in teams if team.levels_completed > 0),
            "totalLevels": len(levels),
            "activeLevels": sum(1 for level in levels if level.is_active),
            "totalSubmissions": total_submissions,
            "correctSubmissions": len(correct),
            "totalScore": total_score,
            "averageScore": _ratio(total_score, len(teams)),
            "completionRate": _ratio(
                len(solved_pairs) * 100, len(teams) * len(levels), 1
            ),
        }
