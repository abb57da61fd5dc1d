"""Cancellable blocking calls.

A single ``threading.Event`` is the cancellation signal for a whole run.
Blocking work (model requests, terminal reads) runs on a daemon thread
while the caller waits for whichever comes first: the result or the
signal. A call that loses the race is abandoned.
"""

import sys
import threading

from .report import CancellationError

POLL_INTERVAL = 0.05


def check_cancelled(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise CancellationError("operation cancelled")


def run_cancellable(func, cancel: threading.Event | None, *args, **kwargs):
    """Call ``func(*args, **kwargs)``, giving up as soon as *cancel* is set.

    Exceptions raised by *func* are re-raised in the caller. Raises
    CancellationError if the signal wins.
    """
    if cancel is None:
        return func(*args, **kwargs)
    check_cancelled(cancel)

    done = threading.Event()
    outcome: dict = {}

    def _target():
        try:
            outcome["value"] = func(*args, **kwargs)
        except BaseException as e:  # relayed to the waiting caller
            outcome["error"] = e
        finally:
            done.set()

    threading.Thread(target=_target, daemon=True).start()
    while not done.wait(POLL_INTERVAL):
        if cancel.is_set():
            raise CancellationError("operation cancelled")

    if "error" in outcome:
        raise outcome["error"]
    return outcome["value"]


def read_line(cancel: threading.Event | None, reader=None) -> str | None:
    """Read one line of operator input, honoring *cancel*.

    Returns None on end of input, so a closed stdin is never mistaken for
    an empty answer.
    """
    if reader is None:
        reader = sys.stdin.readline
    line = run_cancellable(reader, cancel)
    if not line:
        return None
    return line.rstrip("\r\n")
