"""Cooperative cancellation shared by the scheduler and its workers."""

import threading

from loguru import logger

from .errors import JobCancelledError

log = logger.bind(stage="cancel")


class CancellationToken:
    """A one-way flag passed explicitly into the scheduler and every worker.

    Checked at well-defined checkpoints (scheduler loop head, after each
    parsed progress line). Once set it is never cleared.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def wait(self, timeout: float | None = None) -> bool:
        """Sleep up to ``timeout`` seconds; return True early if cancelled."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelledError()


class CancellationController:
    """Hands out one token per operation and cancels the current one.

    ``cancel()`` is idempotent and safe before, during, or after an operation.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._token: CancellationToken | None = None

    def new_token(self) -> CancellationToken:
        with self._lock:
            self._token = CancellationToken()
            return self._token

    @property
    def token(self) -> CancellationToken | None:
        return self._token

    @property
    def cancelled(self) -> bool:
        token = self._token
        return token is not None and token.cancelled

    def cancel(self) -> bool:
        """Request cancellation. Returns True if this call set the flag."""
        with self._lock:
            token = self._token
            if token is None or token.cancelled:
                return False
            token.cancel()
        log.info("Cancellation requested")
        return True
