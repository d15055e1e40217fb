"""Strategy protocol: the shape every rule processor shares.

The dispatcher holds a fixed, ordered list of strategies and calls
``process(message, session)`` on each inside its own fault boundary.
Strategies are side-effecting: they keep their own in-memory state and
persist it through the data-service provider they were given, so storage
swaps in the factory are invisible to them.
"""

from __future__ import annotations

from typing import Any, Callable, Protocol, runtime_checkable

from shopdesk.messages import ClassifiedMessage
from shopdesk.sessions.models import Session
from shopdesk.storage.base import DataService

DataServiceProvider = Callable[[], DataService]


class StrategyError(Exception):
    """A strategy rejected its input."""


@runtime_checkable
class Strategy(Protocol):
    """Protocol for per-message rule processors."""

    @property
    def name(self) -> str:
        """Key under which the result is merged (statistics, behavior, auto_reply)."""
        ...

    def process(self, message: ClassifiedMessage, session: Session) -> Any:
        """Handle one message. Returns a result object with ``to_dict()``."""
        ...

    def start(self) -> None:
        """Start background persistence, if any."""
        ...

    def dispose(self) -> None:
        """Stop timers and flush pending state."""
        ...


def client_tag(client_id: str) -> str:
    """Truncated client id for log lines."""
    return client_id[:12]
