"""Content-addressed store for Tier 2 narratives.

Entries are keyed by a fingerprint of the exact inputs a narrative was
generated from, so identical data never pays for a second model call and
changed data never sees a stale narrative. Misses for one fingerprint are
single-flighted: concurrent callers share one generation.
"""

import hashlib
import json
import logging
from typing import Awaitable, Callable

from pydantic import BaseModel

from smarthealth.models.narrative import CachedNarrative
from smarthealth.services.single_flight import SingleFlight

logger = logging.getLogger(__name__)

# Failure outputs are retryable and must never be served from the cache
UNCACHEABLE_STATUSES = ("unavailable", "declined")


def _encode(value: object) -> object:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return str(value)


def fingerprint(kind: str, payload: object) -> str:
    """SHA-256 over the canonical JSON form of ``payload``, namespaced by kind."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=_encode)
    digest = hashlib.sha256(f"{kind}:{canonical}".encode("utf-8")).hexdigest()
    return f"{kind}:{digest}"


class NarrativeCache:
    def __init__(self) -> None:
        self._entries: dict[str, CachedNarrative] = {}
        self._flight = SingleFlight()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> CachedNarrative | None:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
        else:
            self.hits += 1
        return entry

    def peek(self, key: str) -> CachedNarrative | None:
        """Look up an entry without touching the hit/miss counters."""
        return self._entries.get(key)

    def invalidate(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        logger.info("Cleared %d cached narratives", count)
        return count

    def in_flight(self, key: str) -> bool:
        return self._flight.in_flight(key)

    async def get_or_create(
        self,
        key: str,
        factory: Callable[[], Awaitable[CachedNarrative]],
    ) -> CachedNarrative:
        """Return the cached entry for ``key``, generating it at most once concurrently.

        The entry is stored by the shared generation task itself, so it lands
        in the cache even when every caller has given up waiting.
        """
        entry = self.get(key)
        if entry is not None:
            return entry

        async def generate() -> CachedNarrative:
            existing = self._entries.get(key)
            if existing is not None:
                return existing
            created = await factory()
            if created.output.status in UNCACHEABLE_STATUSES:
                logger.info("Not caching %s narrative (status=%s)", created.kind, created.output.status)
            else:
                self._entries[key] = created
            return created

        return await self._flight.do(key, generate)
