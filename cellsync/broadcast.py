"""
Sync broadcaster: topic based pub/sub between sessions and clients.

Each client connection owns a bounded send queue drained by its own writer
thread, so one slow client never delays the publisher or the other
subscribers of a topic. Client events flowing the other way are validated
and handed to registered handlers; `ui:submit` events resolve entries of
the pending request table.
"""

import logging
import queue
import threading
from concurrent.futures import Future, InvalidStateError
from typing import Any, Callable, Optional

from cellsync.events import parse_message, validate_inbound, validate_outbound
from cellsync.utils import randomid

logger = logging.getLogger(__name__)

# Called with the [topic, event, payload] list to put on the wire.
SendFunc = Callable[[list], None]

CONNECTING = "connecting"
OPEN = "open"
CLOSED = "closed"


class Connection:
    """
    One attached client.

    connecting -> open -> closed. A connection is subscribed to exactly one
    topic while open; closing is final.
    """

    def __init__(
        self,
        send: SendFunc,
        connection_id: Optional[str] = None,
        max_queue: int = 256,
        on_close: Optional[Callable[["Connection"], None]] = None,
    ):
        self.id = connection_id or randomid(8)
        self.send = send
        self.state = CONNECTING
        self.topic: Optional[str] = None
        self.close_reason: Optional[str] = None
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue)
        self._closed = threading.Event()
        self._flush = False
        self._state_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._on_close = on_close

    def __repr__(self) -> str:
        return f"Connection({self.id!r}, {self.state}, topic={self.topic!r})"

    @property
    def is_open(self) -> bool:
        return self.state == OPEN

    def open(self, topic: str) -> None:
        with self._state_lock:
            if self.state != CONNECTING:
                raise RuntimeError(f"Cannot open a connection in state {self.state}")
            self.topic = topic
            self.state = OPEN
        self._thread = threading.Thread(
            target=self._writer,
            name=f"cellsync-conn-{self.id}",
            daemon=True,
        )
        self._thread.start()

    def deliver(self, message: list) -> bool:
        """Queue a message without blocking. A full queue closes the connection."""
        if self.state != OPEN:
            return False
        try:
            self._queue.put_nowait(message)
        except queue.Full:
            logger.warning("Client %s is too slow, closing connection", self.id)
            self.close(reason="slow")
            return False
        return True

    def close(self, reason: str = "closed", flush: bool = False) -> None:
        """Close the connection. With flush, already queued messages are still sent."""
        with self._state_lock:
            if self.state == CLOSED:
                return
            self.close_reason = reason
            self.state = CLOSED
            self._flush = flush
        self._closed.set()
        if self._on_close is not None:
            self._on_close(self)

    def _writer(self) -> None:
        while True:
            try:
                message = self._queue.get(timeout=0.1)
            except queue.Empty:
                if self._closed.is_set():
                    break
                continue
            if self._closed.is_set() and not self._flush:
                break
            if message[0] != self.topic:
                logger.warning(
                    "Connection %s dropped message for topic %s (subscribed to %s)",
                    self.id, message[0], self.topic,
                )
                continue
            try:
                self.send(message)
            except Exception as e:
                logger.warning("Sending to client %s failed: %s", self.id, e)
                self.close(reason="send_failed")
                break


class PendingRequests:
    """
    Table of requests waiting for a client answer.

    Each entry is a Future keyed by (topic, request_id). It is resolved at
    most once and removed as soon as it completes, times out or is
    cancelled.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._pending: dict[tuple[str, str], Future] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def expect(
        self,
        topic: str,
        request_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> tuple[str, Future]:
        request_id = request_id or randomid(8)
        key = (topic, request_id)
        future: Future = Future()
        with self._lock:
            if key in self._pending:
                raise ValueError(f"Request {request_id!r} is already pending")
            self._pending[key] = future
        future.add_done_callback(lambda f: self._discard(key, f))

        if timeout is not None:
            timer = threading.Timer(timeout, future.cancel)
            timer.daemon = True
            timer.start()
            future.add_done_callback(lambda f: timer.cancel())
        return request_id, future

    def _discard(self, key: tuple[str, str], future: Future) -> None:
        with self._lock:
            if self._pending.get(key) is future:
                del self._pending[key]

    def resolve(self, topic: str, request_id: str, value: Any) -> bool:
        """Answer a pending request. Returns False if nothing was waiting."""
        with self._lock:
            future = self._pending.get((topic, request_id))
        if future is None:
            return False
        try:
            future.set_result(value)
        except InvalidStateError:
            return False
        return True

    def cancel_topic(self, topic: str) -> int:
        with self._lock:
            futures = [f for (t, _), f in self._pending.items() if t == topic]
        for future in futures:
            future.cancel()
        return len(futures)


# Called with (topic, validated payload, connection) for a client event.
Handler = Callable[[str, Any, Optional[Connection]], Any]


class Broadcaster:
    def __init__(self, max_queue: int = 256):
        self.max_queue = max_queue
        self.pending = PendingRequests()
        self._lock = threading.Lock()
        self._topics: dict[str, list[Connection]] = {}
        self._handlers: dict[str, Handler] = {}

    # ------------------------------------------------------------------ #
    # Connections
    # ------------------------------------------------------------------ #

    def connect(
        self,
        send: SendFunc,
        connection_id: Optional[str] = None,
        on_close: Optional[Callable[[Connection], None]] = None,
    ) -> Connection:
        def closed(connection: Connection) -> None:
            self._forget(connection)
            if on_close is not None:
                on_close(connection)

        return Connection(
            send,
            connection_id=connection_id,
            max_queue=self.max_queue,
            on_close=closed,
        )

    def subscribe(self, connection: Connection, topic: str) -> None:
        connection.open(topic)
        with self._lock:
            self._topics.setdefault(topic, []).append(connection)
        logger.debug("Connection %s subscribed to %s", connection.id, topic)

    def unsubscribe(self, connection: Connection) -> None:
        connection.close(reason="unsubscribed")

    def _forget(self, connection: Connection) -> None:
        with self._lock:
            subscribers = self._topics.get(connection.topic)
            if subscribers and connection in subscribers:
                subscribers.remove(connection)
                if not subscribers:
                    del self._topics[connection.topic]

    def subscribers(self, topic: str) -> list[Connection]:
        with self._lock:
            return list(self._topics.get(topic, ()))

    def close_topic(self, topic: str) -> None:
        """Drop every subscriber of a topic and cancel its pending requests."""
        for connection in self.subscribers(topic):
            connection.close(reason="session_closed", flush=True)
        self.pending.cancel_topic(topic)

    # ------------------------------------------------------------------ #
    # Messages
    # ------------------------------------------------------------------ #

    def publish(self, topic: str, event: str, payload: dict) -> list:
        """Validate a payload and queue it for every subscriber of topic."""
        message = [topic, event, validate_outbound(event, payload)]
        for connection in self.subscribers(topic):
            connection.deliver(message)
        return message

    def on(self, event: str, handler: Handler) -> None:
        """Register the handler for an inbound client event."""
        self._handlers[event] = handler

    def dispatch(self, topic: str, event: str, payload: Any, connection: Optional[Connection] = None):
        """
        Route one client event.

        Unknown events and events nobody handles are dropped. Raises
        ValidationError for a known event with a bad payload.
        """
        validated = validate_inbound(event, payload)
        if validated is None:
            logger.debug("Dropping unknown event %r on %s", event, topic)
            return None

        if event == "ui:submit":
            if not self.pending.resolve(topic, validated.target.id, validated.target.value):
                logger.debug("No pending request %r on %s", validated.target.id, topic)
            return None

        handler = self._handlers.get(event)
        if handler is None:
            logger.debug("No handler for %r", event)
            return None
        return handler(topic, validated, connection)

    def dispatch_message(self, message: Any, connection: Optional[Connection] = None):
        topic, event, payload = parse_message(message)
        return self.dispatch(topic, event, payload, connection)
