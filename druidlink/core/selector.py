from __future__ import annotations

import random

from .broker_cache import BrokerCache, Endpoint


class EndpointSelector:
    """Uniform random selection over the current cache snapshot."""

    def __init__(self, cache: BrokerCache, *, rng: random.Random | None = None) -> None:
        self._cache = cache
        self._rng = rng or random.Random()

    def pick(self) -> Endpoint | None:
        endpoints = self._cache.snapshot()
        if not endpoints:
            return None
        return endpoints[self._rng.randrange(len(endpoints))]

    def describe(self) -> tuple[Endpoint, ...]:
        return self._cache.snapshot()

    def __str__(self) -> str:
        return str([endpoint.to_dict() for endpoint in self.describe()])
