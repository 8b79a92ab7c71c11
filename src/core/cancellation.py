"""
Cooperative cancellation for deployments.

A ``CancellationToken`` is checked at phase and batch boundaries. The
``CancellationRegistry`` maps deployment ids to tokens so a separate caller
(HTTP handler, signal handler) can cancel a running deployment.

Usage:
    from core.cancellation import CancellationRegistry

    registry = CancellationRegistry()
    token = registry.register("deploy_1700000000000_ab12cd34")
    ...
    registry.cancel("deploy_1700000000000_ab12cd34")
"""

import logging
import signal
import threading
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class OperationCancelledException(Exception):
    """Raised when an operation observes a cancelled token."""

    def __init__(self, message: str = "Operation was cancelled", operation: Optional[str] = None):
        self.message = message
        self.operation = operation
        text = f"{message} ({operation})" if operation else message
        super().__init__(text)


class CancellationToken:
    """Thread-safe cancellation flag with callbacks."""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: Optional[str] = None
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancel_reason(self) -> Optional[str]:
        return self._reason

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: Optional[str] = None) -> None:
        """Cancel the token. Later calls keep the first reason."""
        with self._lock:
            if self._event.is_set():
                return
            self._reason = reason
            self._event.set()
            callbacks = list(self._callbacks)

        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning(f"Cancellation callback failed: {e}")

    def throw_if_cancelled(self, operation: Optional[str] = None) -> None:
        if self._event.is_set():
            raise OperationCancelledException(self._reason or "Operation was cancelled", operation=operation)

    def register_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            self._callbacks.append(callback)

    def unregister_callback(self, callback: Callable[[], None]) -> bool:
        with self._lock:
            try:
                self._callbacks.remove(callback)
                return True
            except ValueError:
                return False

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or timeout. Returns True when cancelled."""
        return self._event.wait(timeout)


class CancellationRegistry:
    """Deployment id to token map."""

    def __init__(self):
        self._tokens: Dict[str, CancellationToken] = {}
        self._lock = threading.Lock()

    def register(self, deployment_id: str) -> CancellationToken:
        with self._lock:
            token = self._tokens.get(deployment_id)
            if token is None:
                token = CancellationToken()
                self._tokens[deployment_id] = token
            return token

    def get(self, deployment_id: str) -> Optional[CancellationToken]:
        with self._lock:
            return self._tokens.get(deployment_id)

    def cancel(self, deployment_id: str, reason: str = "Deployment cancelled") -> bool:
        """Cancel a registered deployment. Returns False when the id is unknown."""
        token = self.get(deployment_id)
        if token is None:
            return False
        logger.info(f"Cancelling deployment {deployment_id}")
        token.cancel(reason)
        return True

    def unregister(self, deployment_id: str) -> None:
        with self._lock:
            self._tokens.pop(deployment_id, None)

    def active(self) -> List[str]:
        with self._lock:
            return [k for k, t in self._tokens.items() if not t.is_cancelled()]


_previous_handler: Any = None


def setup_cancellation_handler(token: CancellationToken) -> None:
    """Cancel ``token`` on the first Ctrl+C instead of raising KeyboardInterrupt."""
    global _previous_handler

    def _handler(signum, frame):
        logger.warning("Interrupt received; cancelling after the current step")
        token.cancel("Interrupted by user")

    _previous_handler = signal.signal(signal.SIGINT, _handler)


def restore_default_handler() -> None:
    global _previous_handler
    signal.signal(signal.SIGINT, _previous_handler or signal.default_int_handler)
    _previous_handler = None
