"""Starting background processes and stopping them when the program is signalled."""

from __future__ import annotations

import signal
import threading
from datetime import timedelta
from typing import Callable, Optional, Union

ProcessStarter = Callable[[], object]
ProcessStopper = Callable[[float], object]

_STOP_SIGNALS = tuple(
    sig
    for sig in (getattr(signal, "SIGUSR1", None), signal.SIGINT, signal.SIGTERM)
    if sig is not None
)


def _run_ignoring_errors(starter: ProcessStarter) -> None:
    try:
        starter()
    except Exception:
        pass


def start_process_at_background(*starters: Optional[ProcessStarter]) -> list[threading.Thread]:
    """Run each starter in its own daemon thread; errors are ignored."""
    threads = []
    for starter in starters:
        if starter is None:
            continue
        thread = threading.Thread(target=_run_ignoring_errors, args=(starter,), daemon=True)
        thread.start()
        threads.append(thread)
    return threads


def stop_process_at_background(
    duration: Union[float, timedelta], *stoppers: Optional[ProcessStopper]
) -> signal.Signals:
    """Block until SIGUSR1, SIGINT or SIGTERM, then call each stopper with a timeout.

    Each stopper receives ``duration`` in seconds; errors from stoppers are
    ignored. Must be called from the main thread. Returns the signal received.
    """
    timeout = duration.total_seconds() if isinstance(duration, timedelta) else float(duration)
    received: list[signal.Signals] = []
    event = threading.Event()

    def handler(signum, _frame) -> None:
        received.append(signal.Signals(signum))
        event.set()

    previous = {sig: signal.signal(sig, handler) for sig in _STOP_SIGNALS}
    try:
        while not event.wait(0.1):
            pass
    finally:
        for sig, old in previous.items():
            if old is not None:
                signal.signal(sig, old)

    for stopper in stoppers:
        if stopper is None:
            continue
        try:
            stopper(timeout)
        except Exception:
            pass
    return received[0]