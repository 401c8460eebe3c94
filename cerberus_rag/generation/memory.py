"""Bounded chat history: the last N user/assistant exchanges."""
from __future__ import annotations

from collections import deque

MAX_EXCHANGES = 10


class ConversationMemory:
    """
    Oldest messages are evicted once more than `max_exchanges`
    user/assistant pairs are held.  The system prompt is not stored here;
    each generator sends its own.
    """

    def __init__(self, max_exchanges: int = MAX_EXCHANGES) -> None:
        if max_exchanges <= 0:
            raise ValueError(f"max_exchanges must be positive, got {max_exchanges}")
        self.max_exchanges = max_exchanges
        self._turns: deque[dict[str, str]] = deque(maxlen=2 * max_exchanges)

    def add_exchange(self, user_content: str, assistant_content: str) -> None:
        self._turns.append({"role": "user", "content": user_content})
        self._turns.append({"role": "assistant", "content": assistant_content})

    def history(self) -> list[dict[str, str]]:
        return list(self._turns)

    def reset(self) -> None:
        self._turns.clear()

    def __len__(self) -> int:
        return len(self._turns)
