"""
Transport contracts between the Session and the control link.

The Session never touches sockets. It asks a factory for a Transport and
receives the transport's lifecycle as listener callbacks, each carrying the
transport instance so that events from a replaced or released transport can be
recognised and ignored.
"""

from typing import Any, Callable, Protocol


class TransportError(Exception):
    """Raised synchronously when a transport cannot be instantiated (e.g. a malformed address)."""


class Transport(Protocol):
    """
    One control-link connection. Both methods must return immediately.
    """

    def send(self, frame: str) -> None:
        """Queue a text frame for transmission."""
        ...

    def close(self, code: int, reason: str) -> None:
        """
        Start the closing handshake. The outcome is reported later through
        `TransportListener.on_close`.
        """
        ...


class TransportListener(Protocol):
    """Receives the lifecycle of a transport, in the order the transport emits it."""

    def on_open(self, transport: Transport) -> None:
        ...

    def on_message(self, transport: Transport, frame: str) -> None:
        ...

    def on_close(self, transport: Transport, code: int, reason: str, clean: bool) -> None:
        ...

    def on_error(self, transport: Transport, error: Exception) -> None:
        ...


# (url, listener) -> Transport. May raise TransportError.
TransportFactory = Callable[[str, TransportListener], Transport]


class Scheduler(Protocol):
    """Anything with asyncio's `call_later`; the handle must support `cancel()`."""

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> Any:
        ...
