import asyncio
import logging
import queue
import threading
from typing import Any, Callable, Optional, Tuple, Union

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI
from websockets.uri import parse_uri

from .. import config
from ..protocol.commands import ABNORMAL_CLOSURE
from .session import Session, SessionConfig
from .state import Notification, SessionSnapshot
from .transport import TransportError, TransportListener

logger = logging.getLogger(__name__)


def close_details(exc: ConnectionClosed) -> Tuple[int, str, bool]:
    """
    Extracts (code, reason, clean) from a websockets ConnectionClosed.

    A closure is clean when the closing handshake completed, i.e. a close frame
    was both received and sent. Without a received close frame the code is
    reported as 1006 (abnormal closure).
    """
    rcvd = exc.rcvd
    if rcvd is None:
        return ABNORMAL_CLOSURE, "", False
    return rcvd.code, rcvd.reason, exc.sent is not None


class _CloseRequest:
    def __init__(self, code: int, reason: str):
        self.code = code
        self.reason = reason


class WebSocketTransport:
    """
    One control WebSocket to the car, driven entirely on the client's event loop.

    Outbound frames go through a queue drained by a single writer task, so they
    reach the wire in the order `send()` was called. Lifecycle events are
    reported to the listener in the order websockets delivers them, and exactly
    one of `on_close`/`on_error` ends the lifecycle.

    Attributes:
        url (str): Control endpoint, e.g. ws://192.168.4.1:81.
        ws (Optional[websockets.ClientConnection]): The open connection, if any.
        task (asyncio.Task): Task running the connection.
    """
    def __init__(self, url: str, listener: TransportListener,
                 loop: asyncio.AbstractEventLoop, connect_timeout: float = config.CONNECT_TIMEOUT):
        try:
            parse_uri(url)
        except InvalidURI as e:
            raise TransportError(f"Invalid URI for control link: {url}") from e

        self.url = url
        self.listener = listener
        self.connect_timeout = connect_timeout
        self.ws: Optional[Any] = None
        self._outbox: "asyncio.Queue[Union[str, _CloseRequest]]" = asyncio.Queue()
        self._close_request: Optional[_CloseRequest] = None
        self._finished = False
        self.task = loop.create_task(self._run(), name="ControlLinkTask")
        self.task.add_done_callback(self._on_task_done)

    def send(self, frame: str):
        if self._close_request is not None or self._finished:
            logger.debug(f"WebSocketTransport: Link closing or closed, frame dropped: {frame!r}")
            return
        self._outbox.put_nowait(frame)

    def close(self, code: int, reason: str):
        if self._close_request is not None:
            return
        self._close_request = _CloseRequest(code, reason)
        if self.ws is None:
            # Still in the opening handshake; abandon it.
            self.task.cancel()
        else:
            self._outbox.put_nowait(self._close_request)

    async def wait_closed(self, timeout: float = 3.0):
        try:
            await asyncio.wait_for(asyncio.shield(self.task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("WebSocketTransport: Timeout waiting for the control link to close.")
        except asyncio.CancelledError:
            pass

    def _report_close(self, code: int, reason: str, clean: bool):
        if not self._finished:
            self._finished = True
            self.listener.on_close(self, code, reason, clean)

    def _report_error(self, error: Exception):
        if not self._finished:
            self._finished = True
            self.listener.on_error(self, error)

    def _on_task_done(self, task: asyncio.Task):
        # A handshake abandoned by close() ends with the task cancelled.
        if task.cancelled() and self._close_request is not None:
            logger.info("WebSocketTransport: Opening handshake abandoned by user.")
            self._report_close(self._close_request.code, self._close_request.reason, True)

    async def _run(self):
        logger.info(f"WebSocketTransport: Attempting to connect to {self.url}...")
        try:
            self.ws = await websockets.connect(
                self.url, open_timeout=self.connect_timeout, ping_interval=20, ping_timeout=20
            )
        except (asyncio.TimeoutError, TimeoutError) as e:
            logger.warning(f"WebSocketTransport: Timeout connecting to {self.url}.")
            self._report_error(e)
            return
        except (InvalidHandshake, OSError) as e:
            logger.warning(f"WebSocketTransport: Failed to connect to {self.url}: {e}")
            self._report_error(e)
            return

        if self._close_request is not None:
            await self.ws.close(code=self._close_request.code, reason=self._close_request.reason)
            self._report_close(self._close_request.code, self._close_request.reason, True)
            return

        logger.info(f"WebSocketTransport: Successfully connected to {self.url}.")
        writer = asyncio.create_task(self._write_loop(), name="ControlLinkWriter")
        try:
            self.listener.on_open(self)
            while True:
                message = await self.ws.recv()
                if isinstance(message, bytes):
                    message = message.decode("utf-8", errors="replace")
                self.listener.on_message(self, message)
        except ConnectionClosed as e:
            self._report_close(*close_details(e))
        except asyncio.CancelledError:
            await self.ws.close()
            raise
        except Exception as e:
            logger.error(f"WebSocketTransport: Unexpected error on control link: {e}", exc_info=True)
            self._report_error(e)
            await self.ws.close()
        finally:
            writer.cancel()

    async def _write_loop(self):
        while True:
            item = await self._outbox.get()
            try:
                if isinstance(item, _CloseRequest):
                    await self.ws.close(code=item.code, reason=item.reason)
                    return
                await self.ws.send(item)
            except ConnectionClosed:
                logger.warning("WebSocketTransport: Link closed while trying to send.")
                return
            except Exception as e:
                logger.error(f"WebSocketTransport: Failed to send on control link: {e}", exc_info=True)
                self._report_error(e)
                await self.ws.close()
                return


class VehicleClient:
    """
    Runs a Session against the car's control WebSocket.

    The client runs an asyncio event loop in a dedicated thread, so the UI
    thread is never blocked. The Session lives on that loop: every call from
    the UI is marshalled with `call_soon_threadsafe`, and the loop doubles as
    the Session's keepalive and reconnect scheduler. Published state is handed
    back through a lock-protected snapshot and a notification queue.

    Attributes:
        session_config (SessionConfig): Configuration passed to the Session.
        loop (Optional[asyncio.AbstractEventLoop]): The client's event loop.
        thread (Optional[threading.Thread]): Thread running the loop.
        session (Optional[Session]): The Session owned by this client.
        notification_queue (queue.Queue): Notifications for the UI thread.
    """
    def __init__(self, session_config: Optional[SessionConfig] = None,
                 transport_cls: Callable[..., Any] = WebSocketTransport):
        self.session_config = session_config or SessionConfig(
            url=config.control_url(),
            keepalive_interval=config.KEEPALIVE_INTERVAL,
            max_reconnect_attempts=config.MAX_RECONNECT_ATTEMPTS,
            reconnect_initial_delay=config.RECONNECT_INITIAL_DELAY,
            auto_reconnect=config.AUTO_RECONNECT,
        )
        self.transport_cls = transport_cls
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.thread: Optional[threading.Thread] = None
        self.session: Optional[Session] = None
        self.notification_queue: "queue.Queue[Notification]" = queue.Queue(maxsize=50)

        self._transport: Optional[Any] = None
        self._snapshot_lock = threading.Lock()
        self._snapshot: Optional[SessionSnapshot] = None

        logger.info(f"VehicleClient initialized. Target: {self.session_config.url}")

    # --- Thread management ---

    def start(self):
        """Starts the client's event loop thread. Does not connect."""
        if self.thread and self.thread.is_alive():
            logger.warning("VehicleClient: Start called, but client thread is already running.")
            return

        self.loop = asyncio.new_event_loop()
        self.session = Session(self._make_transport, self.loop, self.session_config)
        self.session.add_state_listener(self._on_state)
        self.session.add_notification_listener(self._on_notification)
        self._on_state(self.session.snapshot())

        self.thread = threading.Thread(target=self._run_client_event_loop, name="VehicleClientAsyncThread")
        self.thread.daemon = True  # Allow main program to exit even if this thread is running.
        self.thread.start()
        logger.info("VehicleClient: Event loop thread started.")

    def stop(self, timeout: float = 5.0):
        """Disconnects if needed, stops the event loop and waits for the thread."""
        if not (self.loop and self.thread and self.thread.is_alive()):
            logger.debug("VehicleClient: Stop called, but client thread is not running.")
            return

        logger.info("VehicleClient: Stop requested.")
        future = asyncio.run_coroutine_threadsafe(self._shutdown_async(), self.loop)
        try:
            future.result(timeout=timeout)
        except Exception as e:
            logger.error(f"VehicleClient: Error during shutdown: {e}")
        self.loop.call_soon_threadsafe(self.loop.stop)

        self.thread.join(timeout=timeout)
        if self.thread.is_alive():
            logger.warning("VehicleClient: Client thread did not terminate cleanly within timeout.")
        else:
            logger.info("VehicleClient: Client thread joined successfully.")
        self.thread = None
        self.loop = None

    async def _shutdown_async(self):
        self.session.request_disconnect()
        if self._transport is not None:
            await self._transport.wait_closed()

    def _run_client_event_loop(self):
        asyncio.set_event_loop(self.loop)
        try:
            self.loop.run_forever()
        except Exception as e:
            logger.error(f"VehicleClient: Unhandled error in client event loop: {e}", exc_info=True)
        finally:
            pending = asyncio.all_tasks(self.loop)
            for task in pending:
                task.cancel()
            if pending:
                self.loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            self.loop.close()
            logger.info("VehicleClient: Asyncio event loop closed.")

    def _make_transport(self, url: str, listener: TransportListener):
        self._transport = self.transport_cls(url, listener, self.loop)
        return self._transport

    # --- Calls from the UI thread ---

    def _call(self, method_name: str, *args: Any):
        if not (self.loop and self.session):
            logger.warning(f"VehicleClient: Not started. {method_name} ignored.")
            return
        self.loop.call_soon_threadsafe(getattr(self.session, method_name), *args)

    def request_connect(self):
        self._call("request_connect")

    def request_disconnect(self):
        self._call("request_disconnect")

    def input_down(self, input_id: str):
        self._call("input_down", input_id)

    def input_up(self, input_id: str):
        self._call("input_up", input_id)

    def set_keyboard_enabled(self, enabled: bool):
        self._call("set_keyboard_enabled", enabled)

    # --- Published state ---

    def _on_state(self, snapshot: SessionSnapshot):
        with self._snapshot_lock:
            self._snapshot = snapshot

    def _on_notification(self, notification: Notification):
        try:
            if self.notification_queue.full():  # Discard the oldest notification
                self.notification_queue.get_nowait()
            self.notification_queue.put_nowait(notification)
        except (queue.Full, queue.Empty):
            logger.debug("VehicleClient: Notification queue contention. Notification dropped.")

    def snapshot(self) -> Optional[SessionSnapshot]:
        with self._snapshot_lock:
            return self._snapshot

    def get_notification(self) -> Optional[Notification]:
        """
        Retrieves the oldest pending notification. Non-blocking.

        Returns:
            A Notification, or None if the queue is empty.
        """
        try:
            return self.notification_queue.get_nowait()
        except queue.Empty:
            return None
