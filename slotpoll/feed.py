# feed.py
from __future__ import annotations
import asyncio
import logging
from typing import Any, Dict, FrozenSet, List, Optional, Set

from .aggregator import Aggregator
from .errors import InvalidInput, NotFound, StoreUnavailable
from .models import ChangeEvent, ProjectionEvent, TallyEvent
from .persistence import ChangeFeed
from .services import MeetingService, ParticipantService
from .slots import SlotCodec

logger = logging.getLogger(__name__)


class Projection:
    def __init__(self, projection_id: str):
        self.id = projection_id
        self.version = 0
        self.snapshot: Dict[str, Any] = {}
        self.subscribers: List[asyncio.Queue] = []


class ProjectionStore:
    """Versioned views pushed to viewers; a viewer whose queue fills up is dropped."""

    def __init__(self, maxsize: int = 256):
        self._p: Dict[str, Projection] = {}
        self._lock = asyncio.Lock()
        self._maxsize = maxsize

    async def subscribe(self, projection_id: str) -> asyncio.Queue:
        async with self._lock:
            proj = self._p.setdefault(projection_id, Projection(projection_id))
            q: asyncio.Queue = asyncio.Queue(maxsize=self._maxsize)
            proj.subscribers.append(q)
            await q.put(ProjectionEvent(projection=proj.id, version=proj.version, diff=dict(proj.snapshot)))
            return q

    async def unsubscribe(self, projection_id: str, q: asyncio.Queue) -> None:
        async with self._lock:
            proj = self._p.get(projection_id)
            if proj and q in proj.subscribers:
                proj.subscribers.remove(q)

    async def update(self, projection_id: str, diff: Dict[str, Any]) -> ProjectionEvent:
        async with self._lock:
            proj = self._p.setdefault(projection_id, Projection(projection_id))
            proj.version += 1
            proj.snapshot.update(diff)
            ev = ProjectionEvent(projection=proj.id, version=proj.version, diff=diff)
            for q in list(proj.subscribers):
                try:
                    q.put_nowait(ev)
                except asyncio.QueueFull:
                    logger.warning("dropping slow subscriber of %s", projection_id)
                    proj.subscribers.remove(q)
            return ev

    def snapshot(self, projection_id: str) -> Dict[str, Any]:
        proj = self._p.get(projection_id)
        return dict(proj.snapshot) if proj else {}


def meeting_projection(meeting_id: str) -> str:
    return f"meeting:{meeting_id}"


def _release(q: asyncio.Queue) -> None:
    """Settle undelivered items so callers blocked in ``q.join()`` return."""
    while not q.empty():
        q.get_nowait()
        q.task_done()


class ChangeFeedAdapter:
    """Routes row changes from the change feed to per-meeting delivery loops.

    Availability rows carry only a participant id, so routing goes through
    each watched meeting's participant set, re-resolved on every change to
    the participants table. Every meeting has exactly one delivery task,
    which keeps a participant's changes in commit order; meetings proceed
    independently of each other.
    """

    def __init__(
        self,
        feed: ChangeFeed,
        meetings: MeetingService,
        participants: ParticipantService,
        aggregator: Aggregator,
        projections: ProjectionStore,
        codec: SlotCodec,
    ):
        self._feed = feed
        self._meetings = meetings
        self._participants = participants
        self._aggregator = aggregator
        self._projections = projections
        self._codec = codec
        self._members: Dict[str, Set[str]] = {}
        self._queues: Dict[str, asyncio.Queue] = {}
        self._workers: Dict[str, asyncio.Task] = {}
        self._source: Optional[asyncio.Queue] = None
        self._pump: Optional[asyncio.Task] = None

    def watching(self, meeting_id: str) -> bool:
        return meeting_id in self._queues

    def members(self, meeting_id: str) -> FrozenSet[str]:
        return frozenset(self._members.get(meeting_id, ()))

    async def watch(self, meeting_id: str) -> None:
        if meeting_id in self._queues:
            return
        meeting = self._meetings.get(meeting_id)
        if meeting.status != "collecting":
            # a closed meeting's tally no longer changes
            return
        if self._source is None:
            self._source = self._feed.subscribe()
            self._pump = asyncio.create_task(self._pump_loop(), name="slotpoll-feed-pump")
        # queue and membership exist before priming, so nothing committed from here on is missed
        self._queues[meeting_id] = asyncio.Queue()
        try:
            self._members[meeting_id] = self._resolve(meeting_id)
            await self._aggregator.rederive(meeting_id)
        except StoreUnavailable:
            self._members.pop(meeting_id, None)
            q = self._queues.pop(meeting_id, None)
            if q is not None:
                _release(q)
            raise
        if meeting_id not in self._queues:
            return
        self._workers[meeting_id] = asyncio.create_task(
            self._deliver(meeting_id), name=f"slotpoll-feed-{meeting_id}"
        )
        logger.info("watching meeting %s (%d participants)", meeting_id, len(self._members[meeting_id]))
        await self.publish(meeting_id)

    async def unwatch(self, meeting_id: str) -> None:
        task = self._workers.pop(meeting_id, None)
        if task:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._members.pop(meeting_id, None)
        q = self._queues.pop(meeting_id, None)
        if q is not None:
            _release(q)
            logger.info("stopped watching meeting %s", meeting_id)

    async def drain(self, meeting_id: Optional[str] = None) -> None:
        """Wait until every change committed so far has been delivered."""
        if self._source is not None:
            await self._source.join()
        if meeting_id is None:
            queues = list(self._queues.values())
        else:
            queues = [self._queues[meeting_id]] if meeting_id in self._queues else []
        for q in queues:
            await q.join()

    async def close(self) -> None:
        for meeting_id in list(self._workers):
            await self.unwatch(meeting_id)
        if self._pump:
            self._pump.cancel()
            await asyncio.gather(self._pump, return_exceptions=True)
            self._pump = None
        if self._source is not None:
            self._feed.unsubscribe(self._source)
            self._source = None

    def _resolve(self, meeting_id: str) -> Set[str]:
        return {p.id for p in self._participants.list_for_meeting(meeting_id)}

    async def _pump_loop(self) -> None:
        while True:
            ev = await self._source.get()
            try:
                self.route(ev)
            except Exception:
                logger.exception("failed to route %s change on %s", ev.event_type, ev.table)
            finally:
                self._source.task_done()

    def route(self, ev: ChangeEvent) -> None:
        row = ev.new_row or ev.previous_row or {}
        if ev.table == "participants":
            for meeting_id in self._affected_by_participant(row):
                self._reresolve(meeting_id, ev)
                self._queues[meeting_id].put_nowait(ev)
        elif ev.table == "availability":
            pid = row.get("participant_id")
            if pid is None:
                # cannot tell which meeting this belongs to; every watched tally re-derives
                targets = list(self._queues)
            else:
                targets = [m for m, ids in self._members.items() if pid in ids]
            for meeting_id in targets:
                self._queues[meeting_id].put_nowait(ev)
        elif ev.table == "meetings":
            meeting_id = row.get("id")
            if meeting_id in self._queues:
                self._queues[meeting_id].put_nowait(ev)

    def _affected_by_participant(self, row: Dict[str, Any]) -> List[str]:
        meeting_id = row.get("meeting_id")
        if meeting_id is not None:
            return [meeting_id] if meeting_id in self._queues else []
        pid = row.get("id")
        return [m for m, ids in self._members.items() if pid in ids]

    def _reresolve(self, meeting_id: str, ev: ChangeEvent) -> None:
        try:
            self._members[meeting_id] = self._resolve(meeting_id)
        except StoreUnavailable:
            logger.warning("meeting %s: membership re-resolution failed, applying row change", meeting_id)
            members = self._members.setdefault(meeting_id, set())
            if ev.event_type == "delete" and ev.previous_row:
                members.discard(ev.previous_row.get("id"))
            elif ev.new_row:
                members.add(ev.new_row["id"])

    async def _deliver(self, meeting_id: str) -> None:
        q = self._queues[meeting_id]
        while True:
            ev = await q.get()
            try:
                await self._handle(meeting_id, ev)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("meeting %s: failed to deliver %s change on %s", meeting_id, ev.event_type, ev.table)
            finally:
                q.task_done()

    async def _handle(self, meeting_id: str, ev: ChangeEvent) -> None:
        if ev.table == "availability":
            te = self.to_tally_event(ev)
            if te is None:
                logger.info("meeting %s: incomplete %s event on availability; re-deriving", meeting_id, ev.event_type)
                await self._aggregator.rederive(meeting_id)
            else:
                await self._aggregator.apply(meeting_id, te)
        elif ev.table == "participants" and ev.event_type == "delete":
            # later changes to the removed participant's row no longer route here
            logger.info("meeting %s: participant removed; re-deriving", meeting_id)
            await self._aggregator.rederive(meeting_id)
        await self.publish(meeting_id)

    def to_tally_event(self, ev: ChangeEvent) -> Optional[TallyEvent]:
        """Translate an availability row change, or None when the event is too partial to diff."""
        try:
            if ev.event_type == "insert":
                if not ev.new_row or "participant_id" not in ev.new_row:
                    return None
                return TallyEvent(participant_id=ev.new_row["participant_id"], previous_slots=None,
                                  new_slots=self._slots(ev.new_row), version=ev.commit_ts)
            if ev.event_type == "update":
                if not ev.previous_row or not ev.new_row or "slots" not in ev.previous_row:
                    return None
                return TallyEvent(participant_id=ev.new_row["participant_id"],
                                  previous_slots=self._slots(ev.previous_row),
                                  new_slots=self._slots(ev.new_row), version=ev.commit_ts)
            if not ev.previous_row or "participant_id" not in ev.previous_row or "slots" not in ev.previous_row:
                return None
            return TallyEvent(participant_id=ev.previous_row["participant_id"],
                              previous_slots=self._slots(ev.previous_row), new_slots=None, version=ev.commit_ts)
        except (InvalidInput, KeyError, TypeError):
            return None

    def _slots(self, row: Dict[str, Any]) -> FrozenSet[str]:
        return frozenset(self._codec.normalize(s) for s in row["slots"])

    async def publish(self, meeting_id: str) -> None:
        try:
            meeting = self._meetings.get(meeting_id)
        except NotFound:
            return
        view = self._aggregator.heatmap(meeting, participants=len(self._members.get(meeting_id, ())))
        await self._projections.update(meeting_projection(meeting_id), view.model_dump(mode="json"))
