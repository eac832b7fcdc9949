from .aggregator import Aggregator, MeetingTally, best_slot
from .slots import SlotCodec
from .viewmodel import SchedulingViewModel

__all__ = ["Aggregator", "MeetingTally", "SchedulingViewModel", "SlotCodec", "best_slot"]
