from event_dispatcher.context import ApplyStatus, HandlerSettings
from event_dispatcher.dispatcher import EventDispatcher
from event_dispatcher.errors import ApplyError

__all__ = ["ApplyError", "ApplyStatus", "EventDispatcher", "HandlerSettings"]
