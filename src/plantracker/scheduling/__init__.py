"""Calendar availability and meeting-time scheduling."""

from plantracker.scheduling.events import EventMaterializer
from plantracker.scheduling.freebusy import FreeBusyAggregator
from plantracker.scheduling.provider import CalendarProvider, GoogleCalendarProvider
from plantracker.scheduling.service import MeetingScheduler
from plantracker.scheduling.tokens import TokenLifecycleManager

__all__ = [
    "CalendarProvider",
    "EventMaterializer",
    "FreeBusyAggregator",
    "GoogleCalendarProvider",
    "MeetingScheduler",
    "TokenLifecycleManager",
]
