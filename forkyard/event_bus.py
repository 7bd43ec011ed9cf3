"""
FORKYARD events.

The controller announces what it did to anyone listening:

  COMMIT_CREATED      a mutation produced a commit on an agent branch
  AGENT_STARTED       a supervised agent server is up with a session
  AGENT_KILLED        an agent server was shut down on request
  WORKSPACE_OPT_IN    a session joined another agent's worktree
  WORKSPACE_OPT_OUT   a session went back to the outer checkout

Delivery is synchronous and in subscription order.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel, Field

Subscriber = Callable[["ForkyardEvent"], None]


class ForkyardEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: str
    session: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class EventBus:

    def __init__(self):
        self._subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    def emit(self, event_type: str, session: str, payload: Optional[Dict[str, Any]] = None) -> ForkyardEvent:
        """Deliver one event to every subscriber and hand it back to the caller."""
        event = ForkyardEvent(event_type=event_type, session=session, payload=payload or {})
        logger.debug(f"[EVENTS] {event_type} from {session}")

        for subscriber in self._subscribers:
            try:
                subscriber(event)
            except Exception as e:
                logger.warning(f"[EVENTS] Subscriber failed on {event_type}: {e}")
        return event
