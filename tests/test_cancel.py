"""Tests for cancellable blocking calls."""

import threading
import time

import pytest

from toolgate.cancel import check_cancelled, read_line, run_cancellable
from toolgate.report import CancellationError


class TestCheckCancelled:
    def test_none_is_never_cancelled(self):
        check_cancelled(None)

    def test_unset_event(self):
        check_cancelled(threading.Event())

    def test_set_event_raises(self):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(CancellationError):
            check_cancelled(cancel)


class TestRunCancellable:
    def test_returns_value(self):
        assert run_cancellable(lambda a, b: a + b, threading.Event(), 2, b=3) == 5

    def test_without_event_runs_inline(self):
        caller = threading.current_thread()
        seen = []
        run_cancellable(lambda: seen.append(threading.current_thread()), None)
        assert seen == [caller]

    def test_exception_propagates(self):
        def boom():
            raise ValueError("bad")

        with pytest.raises(ValueError, match="bad"):
            run_cancellable(boom, threading.Event())

    def test_already_cancelled_never_calls(self):
        cancel = threading.Event()
        cancel.set()
        called = []
        with pytest.raises(CancellationError):
            run_cancellable(lambda: called.append(1), cancel)
        assert called == []

    def test_cancel_while_blocked(self):
        cancel = threading.Event()
        release = threading.Event()
        threading.Timer(0.1, cancel.set).start()
        start = time.monotonic()
        try:
            with pytest.raises(CancellationError):
                run_cancellable(release.wait, cancel, 10)
        finally:
            release.set()
        assert time.monotonic() - start < 5


class TestReadLine:
    def test_strips_newline(self):
        assert read_line(None, lambda: "yes\r\n") == "yes"

    def test_end_of_input(self):
        assert read_line(None, lambda: "") is None

    def test_empty_line_is_not_end_of_input(self):
        assert read_line(None, lambda: "\n") == ""

    def test_cancelled(self):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(CancellationError):
            read_line(cancel, lambda: "y\n")
