"""Handler and middleware signatures."""

from collections.abc import Awaitable, Callable

from natrix.bus.message import Message

HandlerFunc = Callable[[Message], Awaitable[None]]
Middleware = Callable[[HandlerFunc], HandlerFunc]
