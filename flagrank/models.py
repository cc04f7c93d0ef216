"""
Schemas for teams, levels, event-log records and derived views.

Attributes are snake_case; the wire format is camelCase (``teamId``,
``scoreAwarded`` ...). Both spellings are accepted on input, and
``dump()`` produces the camelCase form.
"""

from __future__ import annotations

import time
import uuid
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from .errors import MalformedEvent

HintType = Literal["points", "time"]
SubmissionStatus = Literal["correct", "incorrect"]
Severity = Literal["low", "medium", "high"]


def now_ms() -> int:
    return int(time.time() * 1000)


def new_event_id() -> str:
    return uuid.uuid4().hex


class Record(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def dump(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class TeamRef(Record):
    id: str = Field(min_length=1)
    name: str = ""


class Team(TeamRef):
    group_id: Optional[str] = None
    score: int = Field(default=0, ge=0)
    levels_completed: int = Field(default=0, ge=0)
    time_penalty: int = Field(default=0, ge=0)
    hints_used: int = Field(default=0, ge=0)
    last_submission_at: Optional[int] = None
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)


class Level(Record):
    id: str = Field(min_length=1)
    group_id: Optional[str] = None
    number: int = 0
    title: str = ""
    base_points: int = Field(default=0, ge=0)
    difficulty: Literal["easy", "medium", "hard", "expert"] = "easy"
    hint_type: HintType = "points"
    hints_available: int = Field(default=0, ge=0)
    point_deduction: int = Field(default=0, ge=0)
    time_penalty_minutes: int = Field(default=0, ge=0)
    is_active: bool = True


class SubmissionRecorded(Record):
    """A flag submission, correct or not. The only source of score."""

    kind: Literal["submission"] = "submission"
    id: str = Field(default_factory=new_event_id, min_length=1)
    team_id: str = Field(min_length=1)
    level_id: str = Field(min_length=1)
    status: SubmissionStatus
    score_awarded: int = Field(default=0, ge=0)
    time_penalty: int = Field(default=0, ge=0)
    time_taken: float = Field(default=0, ge=0)
    hints_used: int = Field(default=0, ge=0)
    submitted_at: int = Field(default_factory=now_ms, ge=0)

    @property
    def is_correct(self) -> bool:
        return self.status == "correct"


class HintUsed(Record):
    """A hint taken by a team. For time hints, the only source of time penalty."""

    kind: Literal["hint"] = "hint"
    id: str = Field(default_factory=new_event_id, min_length=1)
    team_id: str = Field(min_length=1)
    level_id: str = Field(min_length=1)
    hint_type: HintType
    penalty: int = Field(default=0, ge=0)
    hint_number: int = Field(default=1, ge=1)
    used_at: int = Field(default_factory=now_ms, ge=0)


CompetitionEvent = Annotated[
    Union[SubmissionRecorded, HintUsed], Field(discriminator="kind")
]

_event_adapter: TypeAdapter = TypeAdapter(CompetitionEvent)


def _infer_kind(payload: Mapping[str, Any]) -> Optional[str]:
    if "kind" in payload:
        return payload["kind"]
    if "status" in payload:
        return "submission"
    if "hintType" in payload or "hint_type" in payload:
        return "hint"
    return None


def parse_event(payload: Any) -> Union[SubmissionRecorded, HintUsed]:
    """
    Validate a raw payload into one of the two event variants.

    Payloads crossing the boundary must carry their ``id`` (the idempotency
    key). The variant is taken from ``kind`` or inferred from the fields.

    @param payload: Mapping read from the transport
    @return: SubmissionRecorded or HintUsed
    @raises MalformedEvent: when the payload does not fit either schema
    """
    if isinstance(payload, (SubmissionRecorded, HintUsed)):
        return payload
    if not isinstance(payload, Mapping):
        raise MalformedEvent("event payload must be an object", payload)
    if not payload.get("id"):
        raise MalformedEvent("event id is required", payload)

    kind = _infer_kind(payload)
    if kind is None:
        raise MalformedEvent("cannot tell submission from hint event", payload)

    try:
        return _event_adapter.validate_python({**payload, "kind": kind})
    except ValidationError as e:
        summary = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in e.errors()
        )
        raise MalformedEvent(f"invalid {kind} event: {summary}", payload) from e


class LeaderboardEntry(Record):
    id: str
    team_name: str = ""
    group_id: Optional[str] = None
    score: int = 0
    levels_completed: int = 0
    total_time_penalty: int = 0
    last_submission_at: Optional[int] = None
    rank: Optional[int] = None


class AnomalyFinding(Record):
    type: str
    description: str
    severity: Severity
    team_id: Optional[str] = None
    team_name: Optional[str] = None


class EventConfig(Record):
    id: str = "event"
    event_name: str
    total_teams: int
    total_groups: int
    teams_per_group: int
    total_levels: int
    is_active: bool = False
    status: Literal["preparation", "running", "paused", "stopped"] = "preparation"
    start_time: Optional[int] = None
    end_time: Optional[int] = None
    paused_at: Optional[int] = None
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)


class Announcement(Record):
    id: str = Field(default_factory=new_event_id)
    message: str = Field(min_length=1)
    priority: Literal["normal", "high"] = "normal"
    created_at: int = Field(default_factory=now_ms)


class Snapshot(Record):
    snapshot_id: str
    exported_at: int
    version: str
    metadata: Dict[str, int]
    teams: List[Team]
    levels: List[Level]
    submissions: List[SubmissionRecorded]
    hints: List[HintUsed]
    leaderboard: List[LeaderboardEntry]
    event_config: Optional[EventConfig] = None
