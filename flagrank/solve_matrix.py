"""
Solve-Matrix Materializer.

The team x level completion matrix is always rebuilt from scratch. With
team and level counts in the tens to low hundreds a full rebuild is cheap;
past that, an incremental update keyed by (team, level) would be needed.
"""

from typing import Iterable, List, Optional, Sequence, Set, Tuple

from .bus import EventBus, LiveView
from .models import Level, SubmissionRecorded, Team
from .repository import CompetitionRepository


def materialize(
    teams: Sequence[Team],
    levels: Sequence[Level],
    correct_submissions: Iterable[SubmissionRecorded],
) -> List[List[int]]:
    """
    Binary matrix with one row per team and one column per level, in input order.

    A cell is 1 when a correct submission exists for that exact pair.
    Submissions with any other status are ignored.
    """
    solved: Set[Tuple[str, str]] = {
        (submission.team_id, submission.level_id)
        for submission in correct_submissions
        if submission.status == "correct"
    }
    return [
        [1 if (team.id, level.id) in solved else 0 for level in levels]
        for team in teams
    ]


async def load_matrix(
    repository: CompetitionRepository,
    group_id: Optional[str] = None,
) -> Tuple[List[Team], List[Level], List[List[int]]]:
    """Read teams, levels and correct submissions, and materialize."""
    teams = await repository.list_teams(group_id)
    levels = await repository.list_levels(group_id)
    correct = await repository.list_submissions(status="correct")
    return teams, levels, materialize(teams, levels, correct)


class SolveMatrixView(LiveView):
    """Recomputes the whole matrix whenever teams, levels or events change."""

    topics = ("teams", "levels", "events")

    def __init__(
        self,
        bus: EventBus,
        repository: CompetitionRepository,
        group_id: Optional[str] = None,
    ) -> None:
        super().__init__(bus)
        self.repository = repository
        self.group_id = group_id
        self.teams: List[Team] = []
        self.levels: List[Level] = []
        self.matrix: List[List[int]] = []

    async def refresh(self) -> None:
        teams, levels, matrix = await load_matrix(self.repository, self.group_id)
        # Swap all three together so headers and cells never disagree
        self.teams, self.levels, self.matrix = teams, levels, matrix

    def cell(self, team_id: str, level_id: str) -> int:
        for row, team in enumerate(self.teams):
            if team.id != team_id:
                continue
            for column, level in enumerate(self.levels):
                if level.id == level_id:
                    return self.matrix[row][column]
        return 0
