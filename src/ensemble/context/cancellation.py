"""Cooperative cancellation token passed explicitly through every call."""

from __future__ import annotations

import logging

from ensemble.errors import CancellationError

logger = logging.getLogger(__name__)


class CancellationToken:
    """A cancel flag polled at checkpoints.

    Tokens form a tree: a child is cancelled whenever its parent is, but
    cancelling a child leaves the parent untouched.
    """

    def __init__(self, parent: CancellationToken | None = None) -> None:
        self._parent = parent
        self._cancelled = False
        self._reason = ""

    @property
    def cancelled(self) -> bool:
        if self._cancelled:
            return True
        return self._parent is not None and self._parent.cancelled

    @property
    def reason(self) -> str:
        if self._cancelled:
            return self._reason
        if self._parent is not None:
            return self._parent.reason
        return ""

    def cancel(self, reason: str = "cancelled") -> None:
        """Request cancellation. Idempotent; the first reason wins."""
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        logger.debug("Cancellation requested: %s", reason)

    def child(self) -> CancellationToken:
        return CancellationToken(parent=self)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise CancellationError(self.reason or "cancelled")
