# models.py
from __future__ import annotations
from datetime import date, datetime
from typing import Any, Dict, FrozenSet, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

MeetingStatus = Literal["collecting", "scheduled", "cancelled"]
NotificationKind = Literal["meeting_created", "availability_updated", "meeting_scheduled", "meeting_cancelled"]
Table = Literal["meetings", "participants", "availability", "notifications"]

# ---- Common ----
class CommandResult(BaseModel):
    ok: bool
    correlation_id: Optional[str] = None
    error: Optional[str] = None
    detail: Optional[str] = None

class ProjectionEvent(BaseModel):
    projection: str
    version: int
    diff: Dict[str, Any]

class Identity(BaseModel):
    """Caller identity as supplied by the identity collaborator; ``None`` means guest."""
    user_id: Optional[str] = None

    @property
    def is_guest(self) -> bool:
        return self.user_id is None

# ---- Meetings ----
class DailyWindow(BaseModel):
    # minutes of day, half-open [start, end)
    start: int = Field(ge=0, le=1440)
    end: int = Field(ge=0, le=1440)

    @model_validator(mode="after")
    def _ordered(self) -> "DailyWindow":
        if self.start >= self.end:
            raise ValueError("daily window start must be before end")
        return self

class MeetingConstraints(BaseModel):
    model_config = ConfigDict(extra="allow")

    daily_window: Optional[DailyWindow] = None

class Meeting(BaseModel):
    id: str
    title: str
    description: str = ""
    duration: int = 60
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    constraints: MeetingConstraints = Field(default_factory=MeetingConstraints)
    status: MeetingStatus = "collecting"
    scheduled_time: Optional[str] = None
    created_by: str
    created_at: datetime
    updated_at: datetime

    @model_validator(mode="after")
    def _chosen_slot_iff_scheduled(self) -> "Meeting":
        if (self.status == "scheduled") != (self.scheduled_time is not None):
            raise ValueError("scheduled_time must be set exactly when status is 'scheduled'")
        return self

# ---- Participants / availability ----
class Participant(BaseModel):
    id: str
    meeting_id: str
    user_id: Optional[str] = None
    guest_name: Optional[str] = None
    created_at: datetime

    @model_validator(mode="after")
    def _one_identity(self) -> "Participant":
        if (self.user_id is None) == (self.guest_name is None):
            raise ValueError("participant needs exactly one of user_id or guest_name")
        return self

class AvailabilityRecord(BaseModel):
    id: str
    participant_id: str
    slots: List[str] = Field(default_factory=list)
    constraints: Dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime

    @field_validator("slots")
    @classmethod
    def _as_set(cls, v: List[str]) -> List[str]:
        return sorted(set(v))

    @property
    def slot_set(self) -> FrozenSet[str]:
        return frozenset(self.slots)

class Notification(BaseModel):
    recipient: str
    meeting_id: str
    kind: NotificationKind
    title: str
    message: str

# ---- Change feed ----
class ChangeEvent(BaseModel):
    table: Table
    event_type: Literal["insert", "update", "delete"]
    previous_row: Optional[Dict[str, Any]] = None
    new_row: Optional[Dict[str, Any]] = None
    commit_ts: int = 0

class TallyEvent(BaseModel):
    """One participant's availability transition; ``None`` means no record."""
    model_config = ConfigDict(frozen=True)

    participant_id: str
    previous_slots: Optional[FrozenSet[str]] = None
    new_slots: Optional[FrozenSet[str]] = None
    version: Optional[int] = None  # commit sequence of the change, when known

# ---- Intents ----
class CreateMeetingIn(BaseModel):
    title: str
    description: str = ""
    duration: int = 60
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    constraints: MeetingConstraints = Field(default_factory=MeetingConstraints)

class JoinMeetingIn(BaseModel):
    meeting_id: str
    guest_name: Optional[str] = None

class SubmitAvailabilityIn(BaseModel):
    participant_id: str
    slots: List[str]
    constraints: Dict[str, Any] = Field(default_factory=dict)

class MeetingCommandIn(BaseModel):
    meeting_id: str

# ---- Views ----
class HeatmapView(BaseModel):
    meeting_id: str
    status: MeetingStatus
    tally: Dict[str, int]
    best_slot: Optional[str] = None
    best_count: int = 0
    responded: int = 0
    participants: int = 0

class FinalizeOut(BaseModel):
    meeting: Meeting
    chosen_slot: str
    votes: int
