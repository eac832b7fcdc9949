"""Change feed adapter: routing, membership re-resolution and consistency repair."""

import asyncio

import pytest

from slotpoll.errors import StoreUnavailable
from slotpoll.feed import ProjectionStore, meeting_projection
from slotpoll.models import ChangeEvent, CreateMeetingIn, Identity, SubmitAvailabilityIn

from .conftest import ORGANIZER


def slot(hhmm, day="2025-09-03"):
    return f"{day}T{hhmm}:00Z"


async def submit(avm, participant, slots, user_id=None):
    return await avm.availability_submit(
        Identity(user_id=user_id if user_id is not None else participant.user_id),
        SubmitAvailabilityIn(participant_id=participant.id, slots=slots),
    )


def recount(records):
    counts = {}
    for r in records:
        for s in r.slots:
            counts[s] = counts.get(s, 0) + 1
    return counts


@pytest.mark.asyncio
class TestChangeFeedAdapter:
    async def test_submissions_reach_the_tally(self, avm, meeting, join):
        p1, p2, p3 = await join("alice"), await join("bob"), await join(guest_name="Carol")
        await submit(avm, p1, [slot("09:00"), slot("09:15")])
        await submit(avm, p2, [slot("09:15"), slot("09:30")])
        await submit(avm, p3, [slot("09:15")])

        view = await avm.heatmap(meeting.id)

        assert view.tally == {slot("09:00"): 1, slot("09:15"): 3, slot("09:30"): 1}
        assert (view.best_slot, view.best_count) == (slot("09:15"), 3)
        assert view.responded == 3
        assert view.participants == 3

    async def test_watch_primes_from_existing_records(self, avm, meeting, join):
        p = await join("alice")
        avm.records.upsert(p.id, [slot("09:45")])
        await avm.feed.unwatch(meeting.id)
        avm.aggregator.forget(meeting.id)

        await avm.feed.watch(meeting.id)

        assert dict(avm.aggregator.tally(meeting.id)) == {slot("09:45"): 1}

    async def test_participant_added_after_watch_is_tracked(self, avm, meeting, join):
        assert avm.feed.watching(meeting.id)
        late = await join("late")
        await avm.feed.drain(meeting.id)
        assert late.id in avm.feed.members(meeting.id)

        await submit(avm, late, [slot("09:30")])
        assert (await avm.heatmap(meeting.id)).tally == {slot("09:30"): 1}

    async def test_other_meetings_are_not_counted(self, avm, meeting, join):
        other = await avm.meeting_create(ORGANIZER, CreateMeetingIn(title="Other"))
        mine = await join("alice")
        theirs = await join("alice", meeting_id=other.id)
        await submit(avm, mine, [slot("09:00")])
        await submit(avm, theirs, [slot("09:00"), slot("09:15")])

        assert (await avm.heatmap(meeting.id)).tally == {slot("09:00"): 1}
        assert (await avm.heatmap(other.id)).tally == {slot("09:00"): 1, slot("09:15"): 1}

    async def test_resubmission_replaces_previous_slots(self, avm, meeting, join):
        p = await join("alice")
        await submit(avm, p, [slot("09:00"), slot("09:15")])
        await submit(avm, p, [slot("09:15"), slot("09:30")])
        await submit(avm, p, [slot("09:15"), slot("09:30")])
        assert (await avm.heatmap(meeting.id)).tally == {slot("09:15"): 1, slot("09:30"): 1}

    async def test_duplicate_delivery_is_a_noop(self, avm, meeting, join):
        p = await join("alice")
        tap = avm.store.feed.subscribe()
        await submit(avm, p, [slot("09:00")])
        await avm.feed.drain(meeting.id)

        ev = None
        while not tap.empty():
            candidate = tap.get_nowait()
            if candidate.table == "availability":
                ev = candidate
        avm.feed.route(ev)
        avm.feed.route(ev)
        await avm.feed.drain(meeting.id)

        assert dict(avm.aggregator.tally(meeting.id)) == {slot("09:00"): 1}

    async def test_update_without_previous_row_rederives(self, avm, meeting, join):
        p = await join("alice")
        rec = await submit(avm, p, [slot("09:00")])
        await avm.feed.drain(meeting.id)
        # change the row behind the feed's back, then deliver a partial event
        avm.store._tables["availability"][rec.id]["slots"] = [slot("09:30")]
        avm.feed.route(ChangeEvent(
            table="availability", event_type="update", previous_row=None,
            new_row={"id": rec.id, "participant_id": p.id, "slots": [slot("09:30")]}, commit_ts=10_000,
        ))
        await avm.feed.drain(meeting.id)

        assert dict(avm.aggregator.tally(meeting.id)) == {slot("09:30"): 1}

    async def test_delete_without_participant_id_rederives(self, avm, meeting, join):
        p = await join("alice")
        rec = await submit(avm, p, [slot("09:00")])
        await avm.feed.drain(meeting.id)
        del avm.store._tables["availability"][rec.id]
        avm.feed.route(ChangeEvent(table="availability", event_type="delete", previous_row={"id": rec.id}))
        await avm.feed.drain(meeting.id)

        assert dict(avm.aggregator.tally(meeting.id)) == {}

    async def test_full_delete_event_is_applied_incrementally(self, avm, meeting, join):
        p = await join("alice")
        rec = await submit(avm, p, [slot("09:00")])
        avm.store.delete("availability", rec.id)
        view = await avm.heatmap(meeting.id)
        assert view.tally == {}
        assert view.responded == 0

    async def test_malformed_slot_in_feed_rederives(self, avm, meeting, join):
        p = await join("alice")
        await submit(avm, p, [slot("09:00")])
        await avm.feed.drain(meeting.id)
        avm.feed.route(ChangeEvent(
            table="availability", event_type="insert",
            new_row={"id": "x", "participant_id": p.id, "slots": ["garbage"]}, commit_ts=10_000,
        ))
        await avm.feed.drain(meeting.id)
        assert dict(avm.aggregator.tally(meeting.id)) == {slot("09:00"): 1}

    async def test_participant_removal_drops_their_slots(self, avm, meeting, join):
        stays, leaves = await join("alice"), await join("bob")
        await submit(avm, stays, [slot("09:00")])
        rec = await submit(avm, leaves, [slot("09:00"), slot("09:15")])
        await avm.feed.drain(meeting.id)

        # cascade: the participant row goes first, then its availability row
        avm.store.delete("participants", leaves.id)
        avm.store.delete("availability", rec.id)
        await avm.feed.drain(meeting.id)

        assert dict(avm.aggregator.tally(meeting.id)) == {slot("09:00"): 1}
        assert dict(avm.aggregator.tally(meeting.id)) == recount(avm.records.list_for_meeting(meeting.id))
        assert leaves.id not in avm.feed.members(meeting.id)

    async def test_participant_removal_without_cascade(self, avm, meeting, join):
        p = await join("alice")
        await submit(avm, p, [slot("09:30")])
        await avm.feed.drain(meeting.id)

        avm.store.delete("participants", p.id)
        view = await avm.heatmap(meeting.id)

        assert view.tally == {}
        assert (view.responded, view.participants) == (0, 0)

    async def test_failed_watch_releases_waiting_drain(self, avm, meeting, join, monkeypatch):
        p = await join("alice")
        await avm.feed.unwatch(meeting.id)

        def unavailable(meeting_id):
            raise StoreUnavailable("list availability failed")

        monkeypatch.setattr(avm.records, "list_for_meeting", unavailable)
        watching = asyncio.create_task(avm.feed.watch(meeting.id))
        await asyncio.sleep(0)
        # priming is retrying; a change routed meanwhile waits in the meeting queue
        assert p.id in avm.feed.members(meeting.id)
        avm.feed.route(ChangeEvent(
            table="availability", event_type="insert",
            new_row={"id": "r", "participant_id": p.id, "slots": [slot("09:00")]}, commit_ts=10_000,
        ))
        draining = asyncio.create_task(avm.feed.drain(meeting.id))

        with pytest.raises(StoreUnavailable):
            await watching
        await asyncio.wait_for(draining, timeout=1)
        assert not avm.feed.watching(meeting.id)

    async def test_viewers_receive_heatmap_updates(self, avm, meeting, join):
        q = await avm.subscribe(meeting.id)
        initial = q.get_nowait()
        assert initial.projection == meeting_projection(meeting.id)
        assert initial.diff["tally"] == {}

        p = await join("alice")
        await submit(avm, p, [slot("09:15")])
        await avm.feed.drain(meeting.id)

        latest = initial
        while not q.empty():
            latest = q.get_nowait()
        assert latest.version > initial.version
        assert latest.diff["tally"] == {slot("09:15"): 1}
        assert latest.diff["best_slot"] == slot("09:15")

    async def test_unsubscribe_does_not_affect_other_viewers(self, avm, meeting, join):
        leaving = await avm.subscribe(meeting.id)
        staying = await avm.subscribe(meeting.id)
        await avm.unsubscribe(meeting.id, leaving)
        leaving.get_nowait()
        staying.get_nowait()

        p = await join("alice")
        await submit(avm, p, [slot("09:00")])
        await avm.feed.drain(meeting.id)

        assert leaving.empty()
        assert not staying.empty()


@pytest.mark.asyncio
class TestProjectionStore:
    async def test_slow_subscriber_is_dropped(self):
        store = ProjectionStore(maxsize=1)
        slow = await store.subscribe("meeting:m")
        fast = await store.subscribe("meeting:m")
        fast.get_nowait()

        await store.update("meeting:m", {"tally": {"a": 1}})
        assert fast.get_nowait().version == 1
        await store.update("meeting:m", {"tally": {"a": 2}})
        assert fast.get_nowait().version == 2

        # still holding only the initial snapshot it never read
        assert slow.qsize() == 1
        assert store.snapshot("meeting:m") == {"tally": {"a": 2}}

    async def test_new_subscriber_gets_current_snapshot(self):
        store = ProjectionStore()
        await store.update("meeting:m", {"status": "collecting"})
        q = await store.subscribe("meeting:m")
        first = await asyncio.wait_for(q.get(), timeout=1)
        assert first.version == 1
        assert first.diff == {"status": "collecting"}
