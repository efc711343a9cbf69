"""Signal handling for cooperative import shutdown."""

from __future__ import annotations

from collections.abc import Callable
import logging
import signal
import threading


logger = logging.getLogger(__name__)


def install_shutdown_signals(shutdown_event: threading.Event | None = None) -> threading.Event:
    """Attach SIGINT/SIGTERM handlers that set ``shutdown_event``.

    The batch loader checks the event after every committed flush, so a
    signal never interrupts a batch halfway. The first signal requests
    shutdown; repeated signals are ignored. Returns the event.
    """
    event = shutdown_event or threading.Event()

    def _make_handler(sig: signal.Signals) -> Callable[[int, object | None], None]:
        def _handler(signum: int, frame: object | None) -> None:  # pragma: no cover - signal glue
            if event.is_set():
                return
            logger.info("Received %s, stopping after the current batch", sig.name)
            event.set()

        return _handler

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _make_handler(sig))
        except ValueError:  # pragma: no cover - only the main thread may install handlers
            logger.debug("Signal %s is not supported in this context", sig.name)

    return event
