"""Generation capability interface and cooperative cancellation."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Protocol

from delegrid.errors import GenerationCancelled


class CancellationToken:
    """Thread-safe cancel flag with an optional monotonic deadline.

    Tokens derived with ``with_timeout`` also observe their parent, so
    cancelling the parent cancels every derived token.
    """

    def __init__(
        self,
        *,
        deadline: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        parent: CancellationToken | None = None,
    ) -> None:
        self._event = threading.Event()
        self._deadline = deadline
        self._clock = clock
        self._parent = parent
        self._lock = threading.Lock()

    def cancel(self) -> None:
        self._event.set()

    def cancel_after(self, seconds: float) -> None:
        """Expire ``seconds`` from now unless the token expires sooner."""

        deadline = self._clock() + seconds
        with self._lock:
            if self._deadline is None or deadline < self._deadline:
                self._deadline = deadline

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and self._clock() >= self._deadline:
            return True
        return self._parent is not None and self._parent.cancelled

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise GenerationCancelled("Generation cancelled by caller.")

    def with_timeout(self, seconds: float) -> CancellationToken:
        """Derive a token that also expires ``seconds`` from now."""

        return CancellationToken(deadline=self._clock() + seconds, clock=self._clock, parent=self)


class GenerationClient(Protocol):
    """Protocol implemented by generation backends."""

    def generate(self, prompt: str, *, cancellation: CancellationToken | None = None) -> str:
        """Return generated text for ``prompt``.

        Raises:
            GenerationFailure: The backend errored or timed out.
            GenerationCancelled: ``cancellation`` fired before completion.
        """
