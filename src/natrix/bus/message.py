"""Message envelope with explicit acknowledgment."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from uuid import UUID, uuid4

AckFunc = Callable[[], Awaitable[None]]

DELIVERY_COUNT_KEY = "delivery_count"


@dataclass
class Message:
    """A payload plus string metadata, acked or nacked exactly once."""

    payload: bytes
    metadata: dict[str, str] = field(default_factory=dict)
    uuid: UUID = field(default_factory=uuid4)
    _ack_func: AckFunc | None = field(default=None, repr=False)
    _nack_func: AckFunc | None = field(default=None, repr=False)
    _acked: bool = field(default=False, init=False, repr=False)
    _nacked: bool = field(default=False, init=False, repr=False)

    @property
    def acked(self) -> bool:
        return self._acked

    @property
    def nacked(self) -> bool:
        return self._nacked

    @property
    def delivery_count(self) -> int:
        return int(self.metadata.get(DELIVERY_COUNT_KEY, "1"))

    async def ack(self) -> None:
        """Acknowledge successful processing."""
        if self._acked:
            msg = f"Message {self.uuid} already acked"
            raise ValueError(msg)
        if self._nacked:
            msg = f"Message {self.uuid} has been nacked"
            raise ValueError(msg)
        self._acked = True
        if self._ack_func is not None:
            await self._ack_func()

    async def nack(self) -> None:
        """Reject the message so it is redelivered."""
        if self._nacked:
            msg = f"Message {self.uuid} already nacked"
            raise ValueError(msg)
        if self._acked:
            msg = f"Message {self.uuid} has been acked"
            raise ValueError(msg)
        self._nacked = True
        if self._nack_func is not None:
            await self._nack_func()

    def redelivery(self, delivery_count: int) -> Message:
        """Fresh, unacknowledged copy for another delivery attempt."""
        return Message(
            payload=self.payload,
            metadata={**self.metadata, DELIVERY_COUNT_KEY: str(delivery_count)},
            uuid=self.uuid,
            _ack_func=self._ack_func,
            _nack_func=self._nack_func,
        )
