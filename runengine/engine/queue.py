from __future__ import annotations

from collections import deque

from runengine.engine.records import QueuedMessage


class MessageQueue:
    """FIFO of user input that arrived while a turn was in flight."""

    def __init__(self) -> None:
        self._items: deque[QueuedMessage] = deque()

    def enqueue(self, content: str, action: str | None = None) -> QueuedMessage:
        item = QueuedMessage(content=content, action=action)
        self._items.append(item)
        return item

    def cancel(self, item_id: str) -> bool:
        # once dequeued the item is a running turn and must be aborted instead
        for item in self._items:
            if item.id == item_id:
                self._items.remove(item)
                return True
        return False

    def pop_next(self) -> QueuedMessage | None:
        if not self._items:
            return None
        return self._items.popleft()

    def items(self) -> list[QueuedMessage]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)
