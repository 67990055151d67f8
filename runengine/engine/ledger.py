from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Generic, Iterable, TypeVar

from runengine.engine.records import AgentEvent, ThinkingEntry

T = TypeVar("T")


class BoundedLog(Generic[T]):
    """
    Append-only log addressed by absolute index.

    Indices count every item ever appended and never move. Only the newest
    `maxlen` items are retained; older ones are evicted from the front.
    """

    def __init__(self, maxlen: int | None = None) -> None:
        self._items: deque[T] = deque(maxlen=maxlen)
        self._end = 0

    def append(self, item: T) -> int:
        idx = self._end
        self._items.append(item)
        self._end += 1
        return idx

    @property
    def end(self) -> int:
        return self._end

    @property
    def retained_from(self) -> int:
        return self._end - len(self._items)

    def window(self, start: int) -> list[T]:
        # computed at read time so late appends are always visible
        lo = max(start, self.retained_from)
        skip = lo - self.retained_from
        return [item for i, item in enumerate(self._items) if i >= skip]

    def __len__(self) -> int:
        return self._end

    def __iter__(self):
        return iter(list(self._items))


@dataclass(frozen=True)
class LedgerMark:
    thinking_start_index: int
    event_start_index: int


class ActivityLedger:
    def __init__(self, max_thoughts: int | None = None, max_events: int | None = None) -> None:
        self.thoughts: BoundedLog[ThinkingEntry] = BoundedLog(max_thoughts)
        self.events: BoundedLog[AgentEvent] = BoundedLog(max_events)

    def add_thought(self, entry: ThinkingEntry) -> int:
        return self.thoughts.append(entry)

    def add_event(self, event: AgentEvent) -> int:
        return self.events.append(event)

    def mark(self) -> LedgerMark:
        return LedgerMark(thinking_start_index=self.thoughts.end, event_start_index=self.events.end)

    def thoughts_since(self, mark: LedgerMark) -> list[ThinkingEntry]:
        return self.thoughts.window(mark.thinking_start_index)

    def events_since(self, mark: LedgerMark) -> list[AgentEvent]:
        return self.events.window(mark.event_start_index)


def summarize_thoughts(entries: Iterable[ThinkingEntry]) -> tuple[str | None, int | None]:
    """Join a turn's thoughts and measure first-to-last elapsed time."""
    items = list(entries)
    if not items:
        return None, None
    text = "\n\n".join(e.content for e in items if e.content.strip())
    duration = max(0, items[-1].timestamp - items[0].timestamp)
    return (text or None), duration
