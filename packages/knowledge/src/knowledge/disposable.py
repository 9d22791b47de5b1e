"""
knowledge/disposable.py - Disposable scopes

Subscriptions, lifecycle scopes and change handlers all hand back a
Disposable. Disposal is idempotent; combining several scopes with
Disposable.all() disposes every one of them and reports all failures
together as an AggregateDisposalError.
"""
from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from .errors import AggregateDisposalError

logger = logging.getLogger(__name__)


class Disposable:
    """Runs an action at most once when disposed.

    Example:
        scope = Disposable(lambda: handlers.remove(h))
        scope.dispose()
        scope.dispose()  # no-op
    """

    def __init__(self, action: Callable[[], None] | None = None):
        self._action = action
        self._disposed = False
        self._lock = threading.Lock()

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    def dispose(self) -> None:
        with self._lock:
            if self._disposed:
                return
            self._disposed = True
            action, self._action = self._action, None
        if action is not None:
            action()

    def __enter__(self) -> Disposable:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.dispose()

    @staticmethod
    def empty() -> Disposable:
        """A scope with nothing to release."""
        return Disposable()

    @staticmethod
    def all(*scopes: Disposable) -> Disposable:
        """Combine scopes; disposing the result disposes each in order."""
        return CompositeDisposable(scopes)


class CompositeDisposable(Disposable):
    """Disposes children in order, collecting every error."""

    def __init__(self, scopes):
        super().__init__()
        self._scopes = list(scopes)

    def dispose(self) -> None:
        with self._lock:
            if self._disposed:
                return
            self._disposed = True
            scopes, self._scopes = self._scopes, []

        errors: list[BaseException] = []
        for scope in scopes:
            try:
                scope.dispose()
            except Exception as e:
                errors.append(e)

        if errors:
            logger.warning(f"{len(errors)} error(s) while disposing {len(scopes)} scopes")
            raise AggregateDisposalError(errors)
