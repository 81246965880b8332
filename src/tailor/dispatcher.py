"""Ordered delivery of tail events to the client callback."""

import logging
import queue
import threading
from typing import Callable, Dict, List, Optional

from .config import TailorConfig
from .models import MessageType, TailEvent
from .registry import WatchRecord

logger = logging.getLogger(__name__)

NewLinesCallback = Callable[[int, MessageType, List[str]], None]

_STOP = object()

# Upper bound of queued events taken in one pass before delivering
DRAIN_LIMIT = 256


def coalesce_events(events: List[TailEvent], max_lines: int) -> List[TailEvent]:
    """
    Merge adjacent NEW_LINES_ADDED events of the same client and file.

    An event is only merged into the latest event kept for its client,
    so per-client order is preserved. Order across clients may change.

    Args:
        events: Events in the order they were produced
        max_lines: Largest batch a merge may produce

    Returns:
        The coalesced events
    """
    result: List[TailEvent] = []
    latest: Dict[int, int] = {}

    for event in events:
        index = latest.get(event.client_id)
        if index is not None:
            previous = result[index]
            if (
                previous.msg_type == MessageType.NEW_LINES_ADDED
                and event.msg_type == MessageType.NEW_LINES_ADDED
                and previous.path == event.path
                and len(previous.lines) + len(event.lines) <= max_lines
            ):
                result[index] = TailEvent(
                    client_id=previous.client_id,
                    msg_type=MessageType.NEW_LINES_ADDED,
                    path=previous.path,
                    lines=previous.lines + event.lines,
                    timestamp=previous.timestamp,
                )
                continue

        latest[event.client_id] = len(result)
        result.append(event)

    return result


class Dispatcher:
    """
    Delivers events to the single callback of an engine.

    Machines hand events over with ``submit`` from any thread; one
    dispatch thread drains the queue and invokes the callback. An event
    whose client is no longer registered, or stopped while the event was
    queued, is dropped.
    """

    def __init__(
        self,
        lookup: Callable[[int], Optional[WatchRecord]],
        config: Optional[TailorConfig] = None,
        callback: Optional[NewLinesCallback] = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            lookup: Returns the record of a registered client, or None
            config: Engine configuration
            callback: Initial delivery target
        """
        self.config = config or TailorConfig()
        self._lookup = lookup
        self._callback = callback
        self._queue: "queue.Queue" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._closed = False
        self._lock = threading.Lock()
        self.delivered = 0
        self.dropped = 0

    @property
    def callback(self) -> Optional[NewLinesCallback]:
        return self._callback

    def set_callback(self, callback: Optional[NewLinesCallback]) -> None:
        """Replace the delivery target for events not yet delivered."""
        self._callback = callback

    def start(self) -> None:
        """Start the dispatch thread."""
        with self._lock:
            if self._thread is not None or self._closed:
                return
            self._thread = threading.Thread(target=self._run, name="tailor-dispatch", daemon=True)
            self._thread.start()

    def submit(self, event: TailEvent) -> None:
        """Queue an event for delivery. Safe to call from any thread."""
        if self._closed:
            logger.debug(f"Dispatcher closed, dropping event for client {event.client_id}")
            return
        self._queue.put(event)

    def pending_count(self) -> int:
        """Get the number of queued events."""
        return self._queue.qsize()

    def deliver(self, event: TailEvent) -> bool:
        """
        Invoke the callback for one event if its client is still active.

        Returns:
            True if the callback was invoked
        """
        record = self._lookup(event.client_id)
        if record is None:
            self.dropped += 1
            logger.debug(f"Client {event.client_id} is gone, dropping {event.msg_type.name}")
            return False

        with record.delivery_lock:
            if not record.active:
                self.dropped += 1
                return False

            callback = self._callback
            if callback is None:
                self.dropped += 1
                logger.debug(f"No callback installed, dropping {event.msg_type.name} for client {event.client_id}")
                return False

            try:
                callback(event.client_id, event.msg_type, list(event.lines))
            except Exception:
                logger.exception(f"New lines callback failed for client {event.client_id}")
            self.delivered += 1
            return True

    def _run(self) -> None:
        logger.debug("Dispatch loop started")
        stopping = False

        while not stopping:
            item = self._queue.get()
            if item is _STOP:
                break

            batch = [item]
            while len(batch) < DRAIN_LIMIT:
                try:
                    item = self._queue.get_nowait()
                except queue.Empty:
                    break
                if item is _STOP:
                    stopping = True
                    break
                batch.append(item)

            for event in coalesce_events(batch, self.config.max_batch_lines):
                self.deliver(event)

        logger.debug("Dispatch loop exited")

    def close(self) -> None:
        """
        Stop the dispatch thread.

        Blocks until the delivery in progress, if any, has finished,
        unless called from the dispatch thread itself.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            thread = self._thread

        self._queue.put(_STOP)

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.config.stop_timeout_s)
            if thread.is_alive():
                logger.warning("Dispatch thread did not exit in time")
