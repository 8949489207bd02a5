import logging
import threading
from typing import Callable

logger = logging.getLogger(__name__)


class ThreadScheduler:
    """Run a callback once after a delay, inside an app context. Not cancellable."""

    def __init__(self, app):
        self.app = app

    def call_later(self, delay: float, fn: Callable, *args, **kwargs) -> None:
        timer = threading.Timer(max(0.0, float(delay)), self._run, args=(fn, args, kwargs))
        timer.daemon = True
        timer.start()

    def _run(self, fn, args, kwargs) -> None:
        with self.app.app_context():
            try:
                fn(*args, **kwargs)
            except Exception:
                logger.exception("scheduled_call_failed fn=%s", getattr(fn, "__name__", fn))
