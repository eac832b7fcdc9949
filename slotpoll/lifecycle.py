# lifecycle.py
from __future__ import annotations
import logging
from typing import List

from .aggregator import Aggregator
from .errors import Forbidden, InvalidState, NoAvailability, StoreUnavailable
from .models import FinalizeOut, Meeting, MeetingStatus, Notification
from .services import MeetingService, NotificationService, ParticipantService

logger = logging.getLogger(__name__)


class MeetingLifecycle:
    """collecting -> scheduled | cancelled.

    The decision is taken inside the meeting's tally lock, the same section
    availability updates are applied in, and recorded in memory before the
    meeting row is written. A concurrent caller that arrives after the
    decision gets ``InvalidState``.
    """

    def __init__(
        self,
        meetings: MeetingService,
        participants: ParticipantService,
        aggregator: Aggregator,
        notifier: NotificationService,
    ):
        self._meetings = meetings
        self._participants = participants
        self._aggregator = aggregator
        self._notifier = notifier

    def _authorize(self, meeting: Meeting, requester_id: str) -> None:
        if requester_id is None or meeting.created_by != requester_id:
            raise Forbidden(f"only the organizer can change meeting {meeting.id}")

    def _require_collecting(self, meeting_id: str) -> None:
        # the tally may have been released once a previous decision was persisted
        current = self._meetings.get(meeting_id)
        if current.status != "collecting":
            raise InvalidState(f"meeting {meeting_id} is {current.status}")

    async def finalize(self, meeting_id: str, requester_id: str) -> FinalizeOut:
        meeting = self._meetings.get(meeting_id)
        self._authorize(meeting, requester_id)
        if meeting.status != "collecting":
            raise InvalidState(f"meeting {meeting_id} is {meeting.status}")
        await self._aggregator.ensure_primed(meeting_id)

        state = self._aggregator.state(meeting_id)
        async with state.lock:
            if state.decided is not None:
                raise InvalidState(f"meeting {meeting_id} is already {state.decided}")
            self._require_collecting(meeting_id)
            best = self._aggregator.best_slot(meeting)
            if best is None:
                raise NoAvailability(f"no participant is available in an eligible slot for meeting {meeting_id}")
            state.decided = "scheduled"

        slot, votes = best
        updated = await self._commit(meeting_id, "scheduled", slot)
        logger.info("meeting %s scheduled at %s (%d votes)", meeting_id, slot, votes)
        for recipient in self._recipients(meeting):
            self._notifier.send(Notification(
                recipient=recipient, meeting_id=meeting_id, kind="meeting_scheduled",
                title="Meeting Scheduled", message=f'"{meeting.title}" scheduled at {slot}',
            ))
        return FinalizeOut(meeting=updated, chosen_slot=slot, votes=votes)

    async def cancel(self, meeting_id: str, requester_id: str) -> Meeting:
        meeting = self._meetings.get(meeting_id)
        self._authorize(meeting, requester_id)
        if meeting.status != "collecting":
            raise InvalidState(f"meeting {meeting_id} is {meeting.status}")

        state = self._aggregator.state(meeting_id)
        async with state.lock:
            if state.decided is not None:
                raise InvalidState(f"meeting {meeting_id} is already {state.decided}")
            self._require_collecting(meeting_id)
            state.decided = "cancelled"

        updated = await self._commit(meeting_id, "cancelled", None)
        logger.info("meeting %s cancelled", meeting_id)
        for recipient in self._recipients(meeting):
            self._notifier.send(Notification(
                recipient=recipient, meeting_id=meeting_id, kind="meeting_cancelled",
                title="Meeting Cancelled", message=f'"{meeting.title}" was cancelled',
            ))
        return updated

    async def _commit(self, meeting_id: str, status: MeetingStatus, slot) -> Meeting:
        state = self._aggregator.state(meeting_id)
        try:
            return self._meetings.transition(meeting_id, status, scheduled_time=slot)
        except StoreUnavailable:
            async with state.lock:
                state.decided = None
            logger.warning("meeting %s: could not persist %s, decision rolled back", meeting_id, status)
            raise

    def _recipients(self, meeting: Meeting) -> List[str]:
        out = [meeting.created_by]
        try:
            participants = self._participants.list_for_meeting(meeting.id)
        except StoreUnavailable:
            logger.warning("meeting %s: participants unavailable, notifying organizer only", meeting.id)
            return out
        for p in participants:
            if p.user_id and p.user_id not in out:
                out.append(p.user_id)
        return out
