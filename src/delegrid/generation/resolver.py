"""Executor reference to generation client resolution with a TTL cache."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from delegrid.config import Settings
from delegrid.generation.base import GenerationClient
from delegrid.generation.command_client import CommandGenerationClient

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], GenerationClient]


class ExecutorResolver:
    """Map executor names to clients, caching each for ``cache_ttl_seconds``.

    The resolver is constructed by the caller and passed into the stage
    engine; it owns its cache and nothing is kept at module level.
    """

    def __init__(
        self,
        factory: ClientFactory,
        *,
        default_executor: str = "gpt-4o",
        cache_ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._factory = factory
        self.default_executor = default_executor
        self.cache_ttl_seconds = cache_ttl_seconds
        self._clock = clock
        self._cache: dict[str, tuple[GenerationClient, float]] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> ExecutorResolver:
        """Resolve executors to command clients configured from environment."""

        def factory(executor: str) -> GenerationClient:
            return CommandGenerationClient(
                settings.command_template_for(executor),
                model=executor,
                timeout_seconds=settings.generation.timeout_seconds,
            )

        return cls(
            factory,
            default_executor=settings.generation.default_executor,
            cache_ttl_seconds=settings.generation.cache_ttl_seconds,
        )

    def resolve(self, executor: str | None) -> GenerationClient:
        name = (executor or "").strip() or self.default_executor
        now = self._clock()
        with self._lock:
            cached = self._cache.get(name)
            if cached is not None and now < cached[1]:
                return cached[0]
            client = self._factory(name)
            self._cache[name] = (client, now + self.cache_ttl_seconds)
        logger.debug("Resolved executor %s to %s", name, type(client).__name__)
        return client

    def refresh(self) -> None:
        """Drop cached clients so the next resolve rebuilds them."""

        with self._lock:
            self._cache.clear()
