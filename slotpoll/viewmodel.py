# viewmodel.py
from __future__ import annotations
import asyncio
from typing import List, Optional

from .aggregator import Aggregator
from .config import Settings
from .errors import Forbidden, InvalidState, Unauthorized
from .feed import ChangeFeedAdapter, ProjectionStore, meeting_projection
from .lifecycle import MeetingLifecycle
from .models import (
    AvailabilityRecord, CreateMeetingIn, FinalizeOut, HeatmapView, Identity,
    JoinMeetingIn, Meeting, MeetingCommandIn, Notification, Participant,
    SubmitAvailabilityIn,
)
from .persistence import InMemoryRowStore
from .services import AvailabilityStore, MeetingService, NotificationService, ParticipantService
from .slots import SlotCodec


def _require_user(identity: Identity) -> str:
    if identity.is_guest:
        raise Unauthorized("sign in required")
    return identity.user_id


class SchedulingViewModel:
    def __init__(self, settings: Optional[Settings] = None, store: Optional[InMemoryRowStore] = None):
        self.settings = settings or Settings()
        self.codec = SlotCodec(self.settings.slot_minutes, strict=self.settings.strict_slots)
        self.store = store or InMemoryRowStore()
        self.notifier = NotificationService(self.store)
        self.meetings = MeetingService(self.store, self.notifier)
        self.participants = ParticipantService(self.store, self.meetings)
        self.records = AvailabilityStore(self.store, self.codec)
        self.aggregator = Aggregator(self.records, self.codec, self.settings.rederive_attempts)
        self.proj = ProjectionStore(self.settings.subscriber_queue)
        self.feed = ChangeFeedAdapter(
            self.store.feed, self.meetings, self.participants, self.aggregator, self.proj, self.codec
        )
        self.lifecycle = MeetingLifecycle(self.meetings, self.participants, self.aggregator, self.notifier)

    async def meeting_create(self, identity: Identity, a: CreateMeetingIn) -> Meeting:
        meeting = self.meetings.create(_require_user(identity), a)
        await self.feed.watch(meeting.id)
        return meeting

    async def meetings_list(self, identity: Identity) -> List[Meeting]:
        return self.meetings.list(owner=_require_user(identity))

    async def meeting_get(self, meeting_id: str) -> Meeting:
        return self.meetings.get(meeting_id)

    async def participant_join(self, identity: Identity, a: JoinMeetingIn) -> Participant:
        return self.participants.join(a.meeting_id, identity, a.guest_name)

    async def availability_submit(self, identity: Identity, a: SubmitAvailabilityIn) -> AvailabilityRecord:
        participant = self.participants.get(a.participant_id)
        if participant.user_id is not None and participant.user_id != identity.user_id:
            raise Forbidden("cannot submit availability for another user")
        meeting = self.meetings.get(participant.meeting_id)
        if meeting.status != "collecting" or self.aggregator.state(meeting.id).decided is not None:
            raise InvalidState(f"meeting {meeting.id} is no longer collecting availability")
        await self.feed.watch(meeting.id)
        record = self.records.upsert(a.participant_id, a.slots, a.constraints)
        if meeting.created_by != identity.user_id:
            self.notifier.send(Notification(
                recipient=meeting.created_by, meeting_id=meeting.id, kind="availability_updated",
                title="Availability Updated",
                message=f'A participant updated availability for "{meeting.title}"',
            ))
        return record

    async def availability_get(self, participant_id: str) -> Optional[AvailabilityRecord]:
        self.participants.get(participant_id)
        return self.records.get(participant_id)

    async def heatmap(self, meeting_id: str) -> HeatmapView:
        meeting = self.meetings.get(meeting_id)
        await self.feed.watch(meeting_id)
        if not self.feed.watching(meeting_id):
            return await self._closed_heatmap(meeting)
        await self.feed.drain(meeting_id)
        await self.aggregator.ensure_primed(meeting_id)
        return self.aggregator.heatmap(meeting, participants=len(self.feed.members(meeting_id)))

    async def _closed_heatmap(self, meeting: Meeting) -> HeatmapView:
        tally = await self.aggregator.recount(meeting.id)
        participants = self.participants.list_for_meeting(meeting.id)
        return self.aggregator.heatmap(meeting, participants=len(participants), state=tally)

    async def _release(self, meeting_id: str) -> None:
        # viewers get the final state before the meeting's feed state is dropped
        await self.feed.drain(meeting_id)
        await self.feed.unwatch(meeting_id)
        self.aggregator.forget(meeting_id)

    async def meeting_finalize(self, identity: Identity, a: MeetingCommandIn) -> FinalizeOut:
        user = _require_user(identity)
        await self.feed.watch(a.meeting_id)
        await self.feed.drain(a.meeting_id)
        out = await self.lifecycle.finalize(a.meeting_id, user)
        await self._release(a.meeting_id)
        return out

    async def meeting_cancel(self, identity: Identity, a: MeetingCommandIn) -> Meeting:
        cancelled = await self.lifecycle.cancel(a.meeting_id, _require_user(identity))
        await self._release(a.meeting_id)
        return cancelled

    async def notifications(self, identity: Identity) -> List[Notification]:
        return self.notifier.for_recipient(_require_user(identity))

    async def subscribe(self, meeting_id: str) -> asyncio.Queue:
        meeting = self.meetings.get(meeting_id)
        await self.feed.watch(meeting_id)
        projection = meeting_projection(meeting_id)
        if not self.feed.watching(meeting_id) and not self.proj.snapshot(projection):
            view = await self._closed_heatmap(meeting)
            await self.proj.update(projection, view.model_dump(mode="json"))
        return await self.proj.subscribe(projection)

    async def unsubscribe(self, meeting_id: str, q: asyncio.Queue) -> None:
        await self.proj.unsubscribe(meeting_projection(meeting_id), q)

    async def close(self) -> None:
        await self.feed.close()
