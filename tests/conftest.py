import pytest
import pytest_asyncio

from slotpoll.config import Settings
from slotpoll.models import CreateMeetingIn, DailyWindow, Identity, JoinMeetingIn, MeetingConstraints
from slotpoll.slots import SlotCodec
from slotpoll.viewmodel import SchedulingViewModel

ORGANIZER = Identity(user_id="organizer")


@pytest.fixture
def settings():
    return Settings(slot_minutes=15, strict_slots=True, subscriber_queue=8, rederive_attempts=2, log_level="DEBUG")


@pytest.fixture
def codec():
    return SlotCodec(15)


@pytest_asyncio.fixture
async def avm(settings):
    vm = SchedulingViewModel(settings)
    yield vm
    await vm.close()


@pytest_asyncio.fixture
async def meeting(avm):
    """A collecting meeting with a 09:00-10:00 daily window."""
    return await avm.meeting_create(ORGANIZER, CreateMeetingIn(
        title="Design Sync",
        duration=30,
        constraints=MeetingConstraints(daily_window=DailyWindow(start=9 * 60, end=10 * 60)),
    ))


@pytest.fixture
def join(avm, meeting):
    async def _join(user_id=None, guest_name=None, meeting_id=None):
        return await avm.participant_join(
            Identity(user_id=user_id), JoinMeetingIn(meeting_id=meeting_id or meeting.id, guest_name=guest_name)
        )
    return _join
