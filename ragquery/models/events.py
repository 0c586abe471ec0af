from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventType(str, Enum):
    STATUS = "status"
    SOURCE = "source"
    ANSWER = "answer"
    ERROR = "error"
    DONE = "done"


@dataclass
class StreamEvent:
    event: EventType
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.event is EventType.DONE

    def to_sse(self) -> dict[str, str]:
        """Shape expected by sse_starlette's EventSourceResponse."""
        return {"event": self.event.value, "data": json.dumps(self.data)}
