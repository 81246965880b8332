"""Shared fixtures for tailor tests."""

import threading
import time
from pathlib import Path
from typing import Callable, List, Tuple

import pytest

from tailor.config import TailorConfig
from tailor.exceptions import PathNotFoundError
from tailor.models import MessageType
from tailor.observer import DirectorySubscription, FileSubscription, PathObserver


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.05) -> bool:
    """Poll a predicate until it holds or the timeout expires."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class Collector:
    """Thread-safe new-lines callback that records every delivery."""

    def __init__(self):
        self.calls: List[Tuple[int, MessageType, List[str]]] = []
        self._lock = threading.Lock()

    def __call__(self, client_id, msg_type, lines):
        with self._lock:
            self.calls.append((client_id, msg_type, list(lines)))

    def snapshot(self) -> List[Tuple[int, MessageType, List[str]]]:
        with self._lock:
            return list(self.calls)

    def for_client(self, client_id: int) -> List[Tuple[MessageType, List[str]]]:
        return [(t, lines) for cid, t, lines in self.snapshot() if cid == client_id]

    def lines(self, client_id: int) -> List[str]:
        result = []
        for _, lines in self.for_client(client_id):
            result.extend(lines)
        return result

    def types(self, client_id: int) -> List[MessageType]:
        return [t for t, _ in self.for_client(client_id)]

    def wait_lines(self, client_id: int, expected: List[str], timeout: float = 5.0) -> bool:
        return wait_for(lambda: self.lines(client_id) == expected, timeout)


@pytest.fixture
def collector():
    return Collector()


@pytest.fixture
def fast_config():
    """Config with short intervals so threaded tests settle quickly."""
    return TailorConfig(active_poll_ms=50, standby_poll_ms=200)


@pytest.fixture
def polling_config():
    return TailorConfig(use_polling=True, poll_interval_ms=100, active_poll_ms=50, standby_poll_ms=200)


class FakeObserver(PathObserver):
    """Observer whose subscriptions only receive events put by the test."""

    def __init__(self, config=None):
        self.config = config or TailorConfig()
        self.subscriptions = []
        self.unsubscribed = []
        self.healthy = True

    def subscribe(self, path, is_directory=False, recursive=False):
        path = Path(path)
        if is_directory:
            sub = DirectorySubscription(self, path, recursive, self.config)
        else:
            sub = FileSubscription(self, path)
        if not sub.directory.is_dir():
            raise PathNotFoundError(f"Directory does not exist: {sub.directory}")
        self.subscriptions.append(sub)
        return sub

    def unsubscribe(self, subscription):
        self.unsubscribed.append(subscription)

    def is_healthy(self, subscription):
        return self.healthy

    def for_path(self, path):
        return [s for s in self.subscriptions if s.path == path][-1]


class Sink:
    """Collects emitted tail events."""

    def __init__(self):
        self.events = []
        self._lock = threading.Lock()

    def __call__(self, event):
        with self._lock:
            self.events.append(event)

    def snapshot(self):
        with self._lock:
            return list(self.events)

    def lines(self):
        result = []
        for event in self.snapshot():
            result.extend(event.lines)
        return result

    def kinds(self):
        return [event.msg_type for event in self.snapshot()]
