# services.py
from __future__ import annotations
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence

from .errors import NotFound, SchedulingError, StoreUnavailable, ValidationError
from .models import (
    AvailabilityRecord, CreateMeetingIn, Identity, Meeting, MeetingStatus,
    Notification, Participant,
)
from .persistence import InMemoryRowStore
from .slots import SlotCodec

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@contextmanager
def store_errors(action: str) -> Iterator[None]:
    """Surface any persistence failure as ``StoreUnavailable``."""
    try:
        yield
    except SchedulingError:
        raise
    except Exception as exc:
        raise StoreUnavailable(f"{action} failed: {exc}") from exc


class NotificationService:
    """Fire-and-forget notification records; failures are logged, never raised."""

    def __init__(self, store: InMemoryRowStore):
        self._store = store

    def send(self, n: Notification) -> None:
        try:
            self._store.insert("notifications", {**n.model_dump(), "read": False, "created_at": utcnow()})
        except Exception:
            logger.warning("dropping %s notification for %s", n.kind, n.recipient, exc_info=True)

    def for_recipient(self, recipient: str) -> List[Notification]:
        with store_errors("list notifications"):
            rows = self._store.select("notifications", recipient=recipient)
        rows.sort(key=lambda r: r["created_at"], reverse=True)
        return [Notification.model_validate(r) for r in rows]


class MeetingService:
    def __init__(self, store: InMemoryRowStore, notifier: NotificationService):
        self._store = store
        self._notifier = notifier

    def create(self, owner: str, a: CreateMeetingIn) -> Meeting:
        title = a.title.strip()
        if not title:
            raise ValidationError("title must not be empty")
        if a.duration <= 0:
            raise ValidationError("duration must be a positive number of minutes")
        if a.start_date and a.end_date and a.start_date > a.end_date:
            raise ValidationError("start_date must not be after end_date")
        now = utcnow()
        row = {
            "title": title,
            "description": a.description,
            "duration": a.duration,
            "start_date": a.start_date,
            "end_date": a.end_date,
            "constraints": a.constraints.model_dump(),
            "status": "collecting",
            "scheduled_time": None,
            "created_by": owner,
            "created_at": now,
            "updated_at": now,
        }
        with store_errors("create meeting"):
            meeting = Meeting.model_validate(self._store.insert("meetings", row))
        self._notifier.send(Notification(
            recipient=owner, meeting_id=meeting.id, kind="meeting_created",
            title="Meeting Created", message=f'You created "{meeting.title}"',
        ))
        return meeting

    def get(self, meeting_id: str) -> Meeting:
        with store_errors("load meeting"):
            row = self._store.get("meetings", meeting_id)
        if row is None:
            raise NotFound(f"meeting {meeting_id} not found")
        return Meeting.model_validate(row)

    def list(self, owner: Optional[str] = None) -> List[Meeting]:
        with store_errors("list meetings"):
            rows = self._store.select("meetings", created_by=owner) if owner else self._store.select("meetings")
        rows.sort(key=lambda r: r["created_at"], reverse=True)
        return [Meeting.model_validate(r) for r in rows]

    def transition(self, meeting_id: str, status: MeetingStatus, scheduled_time: Optional[str] = None) -> Meeting:
        with store_errors("update meeting"):
            row = self._store.update("meetings", meeting_id, {
                "status": status,
                "scheduled_time": scheduled_time,
                "updated_at": utcnow(),
            })
        return Meeting.model_validate(row)


class ParticipantService:
    def __init__(self, store: InMemoryRowStore, meetings: MeetingService):
        self._store = store
        self._meetings = meetings

    def join(self, meeting_id: str, identity: Identity, guest_name: Optional[str] = None) -> Participant:
        """Return the caller's participant row for the meeting, creating it on first join."""
        self._meetings.get(meeting_id)
        if identity.is_guest:
            name = (guest_name or "").strip()
            if not name:
                raise ValidationError("guest_name is required for guests")
            key = {"meeting_id": meeting_id, "guest_name": name}
            row = {"meeting_id": meeting_id, "user_id": None, "guest_name": name}
        else:
            key = {"meeting_id": meeting_id, "user_id": identity.user_id}
            row = {"meeting_id": meeting_id, "user_id": identity.user_id, "guest_name": None}
        with store_errors("join meeting"):
            existing = self._store.select("participants", **key)
            if existing:
                return Participant.model_validate(existing[0])
            created = self._store.insert("participants", {**row, "created_at": utcnow()})
        logger.info("participant %s joined meeting %s", created["id"], meeting_id)
        return Participant.model_validate(created)

    def get(self, participant_id: str) -> Participant:
        with store_errors("load participant"):
            row = self._store.get("participants", participant_id)
        if row is None:
            raise NotFound(f"participant {participant_id} not found")
        return Participant.model_validate(row)

    def list_for_meeting(self, meeting_id: str) -> List[Participant]:
        with store_errors("list participants"):
            rows = self._store.select("participants", meeting_id=meeting_id)
        return [Participant.model_validate(r) for r in rows]


class AvailabilityStore:
    """Per-participant availability, replaced wholesale on every submission."""

    def __init__(self, store: InMemoryRowStore, codec: SlotCodec):
        self._store = store
        self._codec = codec

    def _validate(self, slot_keys: Any) -> List[str]:
        if not isinstance(slot_keys, (list, tuple)):
            raise ValidationError("slots must be an array of slot keys")
        return sorted({self._codec.normalize(s) for s in slot_keys})

    def upsert(self, participant_id: str, slot_keys: Sequence[str], constraints: Optional[Dict[str, Any]] = None) -> AvailabilityRecord:
        slots = self._validate(slot_keys)
        with store_errors("load participant"):
            participant = self._store.get("participants", participant_id)
        if participant is None:
            raise NotFound(f"participant {participant_id} not found")
        row = {
            "participant_id": participant_id,
            "slots": slots,
            "constraints": dict(constraints or {}),
            "updated_at": utcnow(),
        }
        with store_errors("save availability"):
            saved = self._store.upsert("availability", row, on_conflict=("participant_id",))
        return AvailabilityRecord.model_validate(saved)

    def get(self, participant_id: str) -> Optional[AvailabilityRecord]:
        with store_errors("load availability"):
            rows = self._store.select("availability", participant_id=participant_id)
        return AvailabilityRecord.model_validate(rows[0]) if rows else None

    def list_for_meeting(self, meeting_id: str) -> List[AvailabilityRecord]:
        with store_errors("list availability"):
            ids = [p["id"] for p in self._store.select("participants", meeting_id=meeting_id)]
            rows = self._store.select_in("availability", "participant_id", ids) if ids else []
        return [AvailabilityRecord.model_validate(r) for r in rows]
