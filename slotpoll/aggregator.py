# aggregator.py
from __future__ import annotations
import asyncio
import logging
from datetime import date
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

from .errors import OutOfOrderEvent, StoreUnavailable
from .models import AvailabilityRecord, DailyWindow, HeatmapView, Meeting, MeetingStatus, TallyEvent
from .services import AvailabilityStore
from .slots import SlotCodec

logger = logging.getLogger(__name__)

_EMPTY: Mapping[str, int] = MappingProxyType({})


class MeetingTally:
    """One meeting's counts; writers mutate it only while holding ``lock``.

    Counts are published as a fresh read-only mapping on every change, so a
    reader always holds a complete snapshot and never waits on a writer.
    """

    def __init__(self, meeting_id: str):
        self.meeting_id = meeting_id
        self.lock = asyncio.Lock()
        self.primed = False
        # in-memory lifecycle decision taken under ``lock``, see lifecycle.py
        self.decided: Optional[MeetingStatus] = None
        self._counts: Mapping[str, int] = _EMPTY
        self._slots: Dict[str, FrozenSet[str]] = {}
        self._versions: Dict[str, int] = {}

    @property
    def counts(self) -> Mapping[str, int]:
        return self._counts

    @property
    def responded(self) -> int:
        return len(self._slots)

    def tracked(self, participant_id: str) -> Optional[FrozenSet[str]]:
        return self._slots.get(participant_id)

    def apply(self, event: TallyEvent) -> bool:
        """Apply one participant transition as a single diff.

        Returns False when the event was already applied. Raises
        ``OutOfOrderEvent`` when the event's previous state disagrees with
        what is tracked for the participant.
        """
        pid = event.participant_id
        tracked = self._slots.get(pid)
        last = self._versions.get(pid)
        stale = event.version is not None and last is not None and event.version <= last

        if event.new_slots == tracked and (stale or event.previous_slots != tracked):
            return False
        if stale:
            raise OutOfOrderEvent(f"participant {pid}: version {event.version} after {last}")
        if event.previous_slots != tracked:
            raise OutOfOrderEvent(f"participant {pid}: previous state does not match tracked state")

        old = event.previous_slots or frozenset()
        new = event.new_slots or frozenset()
        counts = dict(self._counts)
        for slot in old - new:
            n = counts.get(slot, 0) - 1
            if n > 0:
                counts[slot] = n
            else:
                counts.pop(slot, None)
        for slot in new - old:
            counts[slot] = counts.get(slot, 0) + 1
        self._counts = MappingProxyType(counts)

        if event.new_slots is None:
            self._slots.pop(pid, None)
        else:
            self._slots[pid] = event.new_slots
        if event.version is not None:
            self._versions[pid] = event.version
        return True

    def reset(self, records: Iterable[AvailabilityRecord]) -> None:
        counts: Dict[str, int] = {}
        slots: Dict[str, FrozenSet[str]] = {}
        for r in records:
            slots[r.participant_id] = r.slot_set
            for slot in r.slot_set:
                counts[slot] = counts.get(slot, 0) + 1
        self._slots = slots
        self._versions = {}
        self._counts = MappingProxyType(counts)
        self.primed = True


def best_slot(
    tally: Mapping[str, int],
    codec: SlotCodec,
    window: Optional[DailyWindow] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> Optional[Tuple[str, int]]:
    """Most popular eligible slot; ties go to the earliest instant."""
    best: Optional[Tuple[str, int]] = None
    best_key = None
    for slot, count in tally.items():
        if count <= 0:
            continue
        if not codec.window_filter(slot, window) or not codec.in_date_range(slot, start_date, end_date):
            continue
        key = (-count, codec.instant(slot))
        if best_key is None or key < best_key:
            best, best_key = (slot, count), key
    return best


class Aggregator:
    def __init__(self, records: AvailabilityStore, codec: SlotCodec, rederive_attempts: int = 3):
        self._records = records
        self._codec = codec
        self._attempts = max(1, rederive_attempts)
        self._tallies: Dict[str, MeetingTally] = {}

    def state(self, meeting_id: str) -> MeetingTally:
        st = self._tallies.get(meeting_id)
        if st is None:
            st = self._tallies[meeting_id] = MeetingTally(meeting_id)
        return st

    def tally(self, meeting_id: str) -> Mapping[str, int]:
        return self.state(meeting_id).counts

    async def apply(self, meeting_id: str, event: TallyEvent) -> bool:
        st = self.state(meeting_id)
        async with st.lock:
            try:
                return st.apply(event)
            except OutOfOrderEvent as exc:
                logger.info("meeting %s: %s; re-deriving tally", meeting_id, exc)
        await self.rederive(meeting_id)
        return True

    async def rederive(self, meeting_id: str) -> Mapping[str, int]:
        """Rebuild the tally from persisted records, retrying transient read failures."""
        records = await self._load(meeting_id)
        st = self.state(meeting_id)
        async with st.lock:
            st.reset(records)
        logger.debug("meeting %s: tally re-derived from %d records", meeting_id, len(records))
        return st.counts

    async def _load(self, meeting_id: str):
        for attempt in range(1, self._attempts + 1):
            try:
                return self._records.list_for_meeting(meeting_id)
            except StoreUnavailable:
                if attempt == self._attempts:
                    raise
                logger.warning("meeting %s: re-derivation read failed (attempt %d/%d)", meeting_id, attempt, self._attempts)
                await asyncio.sleep(0.05 * attempt)

    async def recount(self, meeting_id: str) -> MeetingTally:
        """A tally rebuilt from persisted records that this aggregator does not keep."""
        st = MeetingTally(meeting_id)
        st.reset(await self._load(meeting_id))
        return st

    async def ensure_primed(self, meeting_id: str) -> None:
        if not self.state(meeting_id).primed:
            await self.rederive(meeting_id)

    def best_slot(self, meeting: Meeting) -> Optional[Tuple[str, int]]:
        return best_slot(
            self.tally(meeting.id), self._codec,
            meeting.constraints.daily_window, meeting.start_date, meeting.end_date,
        )

    def heatmap(self, meeting: Meeting, participants: int = 0, state: Optional[MeetingTally] = None) -> HeatmapView:
        st = state or self.state(meeting.id)
        counts = st.counts
        best = best_slot(counts, self._codec, meeting.constraints.daily_window, meeting.start_date, meeting.end_date)
        return HeatmapView(
            meeting_id=meeting.id,
            status=meeting.status,
            tally=dict(counts),
            best_slot=best[0] if best else None,
            best_count=best[1] if best else 0,
            responded=st.responded,
            participants=participants,
        )

    def forget(self, meeting_id: str) -> None:
        self._tallies.pop(meeting_id, None)
