"""
Append-only audit log of protocol events.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional

EventSink = Callable[["Event"], None]


@dataclass(frozen=True)
class Event:
    """One emitted event."""

    address: str  # Emitting contract
    name: str
    args: dict[str, Any] = field(default_factory=dict)
    block_number: int = 0

    def __getitem__(self, key: str) -> Any:
        return self.args[key]


class EventLog:
    """Ordered event log owned by a host."""

    def __init__(self) -> None:
        self._events: list[Event] = []

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[Event]:
        return iter(self._events)

    def append(self, event: Event) -> None:
        self._events.append(event)

    def truncate(self, length: int) -> None:
        """Drop events emitted after ``length``; used when a call is rolled back."""
        del self._events[length:]

    def since(self, index: int) -> list[Event]:
        return self._events[index:]

    def filter(self, name: Optional[str] = None, address: Optional[str] = None) -> list[Event]:
        """Events matching the given name and/or emitting address."""
        return [
            event
            for event in self._events
            if (name is None or event.name == name)
            and (address is None or event.address == address)
        ]

    def last(self, name: str) -> Optional[Event]:
        """Most recent event with this name."""
        for event in reversed(self._events):
            if event.name == name:
                return event
        return None
