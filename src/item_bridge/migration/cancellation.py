"""Cooperative pause requests for running migrations."""

from item_bridge.utils.logging import get_logger

logger = get_logger(__name__)


class PauseToken:
    """Flag checked by the migrator at page boundaries.

    Requesting a pause never interrupts in-flight writes: the current page is
    flushed and checkpointed, then the run ends with status ``paused``.
    Safe to call from signal handlers.
    """

    def __init__(self) -> None:
        self._requested = False
        self.reason: str | None = None

    @property
    def pause_requested(self) -> bool:
        return self._requested

    def request_pause(self, reason: str = "requested") -> None:
        if not self._requested:
            logger.info("pause_requested", reason=reason)
        self._requested = True
        self.reason = reason

    def reset(self) -> None:
        self._requested = False
        self.reason = None
