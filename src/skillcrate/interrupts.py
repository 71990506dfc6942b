from __future__ import annotations

import logging
import signal
import threading
from contextlib import contextmanager
from typing import Any, Iterator

logger = logging.getLogger(__name__)

EXIT_SIGINT = 130
EXIT_SIGTERM = 143


def _raise_exit(signum: int, frame: Any) -> None:
    logger.warning("Received signal %d, cleaning up", signum)
    raise SystemExit(128 + signum)


@contextmanager
def cleanup_on_signal() -> Iterator[None]:
    """Turn SIGTERM into ``SystemExit`` so ``finally`` blocks and rollback run.

    SIGINT already arrives as ``KeyboardInterrupt``. Signal handlers can only
    be installed from the main thread; elsewhere this is a no-op.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return
    previous = signal.signal(signal.SIGTERM, _raise_exit)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)
