# model/events.py
from typing import ClassVar, Dict, Literal, Union
from pydantic import BaseModel
from util.enums import EventType


class _Event(BaseModel):
    event: ClassVar[EventType]

    def payload(self) -> Dict[str, object]:
        return self.model_dump()


class ThinkingEvent(_Event):
    event: ClassVar[EventType] = EventType.THINKING
    step: str


class ResponseEvent(_Event):
    event: ClassVar[EventType] = EventType.RESPONSE
    content: str


class SourceEvent(_Event):
    event: ClassVar[EventType] = EventType.SOURCE
    source_type: str
    source_id: str
    relevance: float


class DoneEvent(_Event):
    event: ClassVar[EventType] = EventType.DONE
    status: Literal["complete"] = "complete"


Event = Union[ThinkingEvent, ResponseEvent, SourceEvent, DoneEvent]

# Position of each event type in the stream; emissions must be non-decreasing.
EVENT_PHASE: Dict[EventType, int] = {
    EventType.THINKING: 0,
    EventType.RESPONSE: 1,
    EventType.SOURCE: 2,
    EventType.DONE: 3,
}
