"""Session chat: messages in the order the hub relayed them."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterator


@dataclass(frozen=True)
class ChatMessage:
    sender: str
    text: str
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    sent_at: datetime | None = None

    @property
    def display_time(self) -> str:
        t = (self.sent_at or self.received_at).astimezone()
        return f"{t.hour}:{t.minute:02d}"


class ChatLog:
    def __init__(self):
        self._messages: list[ChatMessage] = []

    def append(self, message: ChatMessage) -> None:
        self._messages.append(message)

    @property
    def messages(self) -> tuple[ChatMessage, ...]:
        return tuple(self._messages)

    @property
    def last(self) -> ChatMessage | None:
        return self._messages[-1] if self._messages else None

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[ChatMessage]:
        return iter(list(self._messages))
