"""Tests for registration table module."""

import os
import threading
import time

import pytest

from conftest import FakeObserver, Sink, wait_for
from tailor.config import TailorConfig
from tailor.exceptions import ClientIdExhaustedError, PathNotFoundError, PathNotReadableError
from tailor.machine import DirectoryTail, FileTail
from tailor.models import MAX_CLIENT_ID, ObserverEvent, ObserverEventKind
from tailor.registry import RegistrationTable


@pytest.fixture
def config():
    return TailorConfig(active_poll_ms=50, standby_poll_ms=200)


@pytest.fixture
def observer(config):
    return FakeObserver(config)


@pytest.fixture
def table(observer, config):
    table = RegistrationTable(observer, Sink(), config)
    yield table
    table.remove_all()


class TestRegistrationTable:
    """Tests for RegistrationTable class."""

    def test_create_empty_table(self, table):
        assert len(table) == 0
        assert table.client_ids() == []

    def test_add_file(self, table, tmp_path):
        f = tmp_path / "a.log"
        f.write_text("x\n")

        client_id = table.add(f)

        assert client_id == 0
        assert len(table) == 1
        assert client_id in table
        record = table.lookup(client_id)
        assert record.path == f.resolve()
        assert record.active
        assert not record.is_directory
        assert isinstance(record.machine, FileTail)

    def test_add_directory(self, table, tmp_path):
        (tmp_path / "a.log").write_text("x\n")

        client_id = table.add(tmp_path)

        record = table.lookup(client_id)
        assert record.is_directory
        assert isinstance(record.machine, DirectoryTail)
        assert wait_for(lambda: table.children_of(client_id) == [tmp_path.resolve() / "a.log"])

    def test_relative_path_resolved(self, table, tmp_path, monkeypatch):
        (tmp_path / "a.log").write_text("x\n")
        monkeypatch.chdir(tmp_path)

        client_id = table.add("a.log")

        assert table.lookup(client_id).path == (tmp_path / "a.log").resolve()

    def test_add_missing_raises(self, table, tmp_path):
        with pytest.raises(PathNotFoundError):
            table.add(tmp_path / "missing.log")

        assert len(table) == 0

    @pytest.mark.skipif(os.name != "posix" or os.geteuid() == 0, reason="needs non-root POSIX")
    def test_add_unreadable_raises(self, table, tmp_path):
        f = tmp_path / "secret.log"
        f.write_text("x\n")
        f.chmod(0)

        try:
            with pytest.raises(PathNotReadableError):
                table.add(f)
        finally:
            f.chmod(0o644)

        assert len(table) == 0

    @pytest.mark.skipif(not hasattr(os, "mkfifo"), reason="no FIFOs on this platform")
    def test_fifo_rejected_without_blocking(self, table, tmp_path):
        fifo = tmp_path / "pipe"
        os.mkfifo(fifo)
        errors = []

        def add():
            try:
                table.add(fifo)
            except PathNotReadableError as e:
                errors.append(e)

        worker = threading.Thread(target=add, daemon=True)
        worker.start()
        worker.join(timeout=2.0)

        assert not worker.is_alive()
        assert len(errors) == 1
        assert len(table) == 0

    def test_open_runs_outside_table_lock(self, config, tmp_path):
        entered = threading.Event()
        release = threading.Event()

        class SlowObserver(FakeObserver):
            def subscribe(self, path, is_directory=False, recursive=False):
                entered.set()
                release.wait(timeout=5.0)
                return super().subscribe(path, is_directory, recursive)

        table = RegistrationTable(SlowObserver(config), Sink(), config)
        f = tmp_path / "a.log"
        f.write_text("")
        added = []
        answered = threading.Event()

        worker = threading.Thread(target=lambda: added.append(table.add(f)), daemon=True)
        worker.start()
        try:
            assert entered.wait(timeout=2.0)
            threading.Thread(
                target=lambda: (table.lookup(0), table.client_ids(), answered.set()),
                daemon=True,
            ).start()
            assert answered.wait(timeout=1.0)
        finally:
            release.set()
            worker.join(timeout=5.0)

        assert added == [0]
        table.remove_all()

    @pytest.mark.skipif(not hasattr(os, "symlink"), reason="no symlinks on this platform")
    def test_symlink_kept_as_given(self, table, tmp_path):
        target = tmp_path / "app-1.log"
        target.write_text("")
        link = tmp_path / "current.log"
        link.symlink_to(target)

        client_id = table.add(link)

        assert table.lookup(client_id).path == tmp_path.resolve() / "current.log"

    def test_ids_monotonic(self, table, tmp_path):
        f = tmp_path / "a.log"
        f.write_text("")

        ids = [table.add(f) for _ in range(3)]

        assert ids == [0, 1, 2]

    def test_ids_not_reused(self, table, tmp_path):
        f = tmp_path / "a.log"
        f.write_text("")
        first = table.add(f)
        table.remove(first)

        second = table.add(f)

        assert second == first + 1

    def test_same_path_twice(self, table, tmp_path):
        f = tmp_path / "a.log"
        f.write_text("")

        a = table.add(f)
        b = table.add(f)

        assert a != b
        assert table.lookup(a).machine is not table.lookup(b).machine

    def test_remove(self, table, tmp_path):
        f = tmp_path / "a.log"
        f.write_text("")
        client_id = table.add(f)
        record = table.lookup(client_id)

        assert table.remove(client_id) is True

        assert client_id not in table
        assert record.active is False
        assert record.machine.is_stopped

    def test_remove_twice(self, table, tmp_path):
        f = tmp_path / "a.log"
        f.write_text("")
        client_id = table.add(f)

        assert table.remove(client_id) is True
        assert table.remove(client_id) is False

    def test_remove_unknown(self, table):
        assert table.remove(42) is False

    def test_remove_directory_drops_children(self, table, tmp_path):
        (tmp_path / "a.log").write_text("x\n")
        (tmp_path / "b.log").write_text("x\n")
        client_id = table.add(tmp_path)
        assert wait_for(lambda: len(table.children_of(client_id)) == 2)
        machine = table.lookup(client_id).machine
        children = [machine._children[p] for p in machine.children()]

        table.remove(client_id)

        assert table.children_of(client_id) == []
        assert all(child.is_stopped for child in children)

    def test_remove_all(self, table, tmp_path):
        f = tmp_path / "a.log"
        f.write_text("")
        table.add(f)
        table.add(f)

        assert table.remove_all() == 2
        assert len(table) == 0

    def test_max_watches(self, observer, tmp_path):
        table = RegistrationTable(observer, Sink(), TailorConfig(max_watches=1))
        f = tmp_path / "a.log"
        f.write_text("")
        table.add(f)

        with pytest.raises(ClientIdExhaustedError):
            table.add(f)

        table.remove_all()

    def test_id_space_exhausted(self, table, tmp_path):
        f = tmp_path / "a.log"
        f.write_text("")
        table._next_id = MAX_CLIENT_ID

        assert table.add(f) == MAX_CLIENT_ID
        with pytest.raises(ClientIdExhaustedError):
            table.add(f)

    def test_attach_child_for_unknown_client(self, table, tmp_path):
        assert table.attach_child(99, tmp_path / "a.log", None) is False
        assert table.children_of(99) == []

    def test_observer_failure_removes_client(self, table, observer, tmp_path):
        f = tmp_path / "a.log"
        f.write_text("")
        client_id = table.add(f)

        observer.for_path(f.resolve()).put(
            ObserverEvent(kind=ObserverEventKind.ERROR, path=f.resolve(), error="directory deleted")
        )

        assert wait_for(lambda: client_id not in table)

    def test_remove_waits_for_delivery(self, table, tmp_path):
        f = tmp_path / "a.log"
        f.write_text("")
        client_id = table.add(f)
        record = table.lookup(client_id)
        in_callback = threading.Event()
        release = threading.Event()
        removed = threading.Event()

        def deliver():
            with record.delivery_lock:
                in_callback.set()
                release.wait(timeout=5.0)

        worker = threading.Thread(target=deliver)
        worker.start()
        in_callback.wait(timeout=2.0)

        remover = threading.Thread(target=lambda: (table.remove(client_id), removed.set()))
        remover.start()
        time.sleep(0.2)
        assert not removed.is_set()

        release.set()
        worker.join(timeout=2.0)
        remover.join(timeout=5.0)
        assert removed.is_set()
        assert record.active is False
