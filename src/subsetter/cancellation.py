from __future__ import annotations

import logging
from threading import Event

from .errors import CancellationError

logger = logging.getLogger(__name__)


class CancellationHandler:
    """
    Cooperative cancellation flag.

    One handler is owned by each engine instance. Long running loops call
    :meth:`check` between statements; a statement already sent to the
    database is never interrupted.
    """

    def __init__(self) -> None:
        self._event = Event()

    def cancel(self) -> None:
        if not self._event.is_set():
            logger.info("cancellation requested")
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def check(self) -> None:
        """Raise :class:`CancellationError` if cancellation was requested."""
        if self._event.is_set():
            raise CancellationError("cancelled")

    def reset(self) -> None:
        self._event.clear()
