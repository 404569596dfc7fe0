"""
De-duplication registry: at most one live opportunity per (strategy, instrument).

An entry is released when the opportunity expires, or earlier when the
engine converts it into a position.
"""

from __future__ import annotations

import logging
import time

from scanner.models import Opportunity, StrategyTag

logger = logging.getLogger(__name__)


class DedupeRegistry:

    def __init__(self) -> None:
        self._live: dict[tuple[StrategyTag, str], tuple[str, float]] = {}

    def try_claim(self, opp: Opportunity, now: float | None = None) -> bool:
        """
        Register opp if no un-expired opportunity holds its key.
        Returns False (and registers nothing) when the key is taken.
        """
        now = now if now is not None else time.time()
        held = self._live.get(opp.key)
        if held is not None and held[1] > now:
            return False
        self._live[opp.key] = (opp.opportunity_id, opp.expires_at)
        return True

    def release(self, opp: Opportunity) -> None:
        """Free the key, but only if opp is still the holder."""
        held = self._live.get(opp.key)
        if held is not None and held[0] == opp.opportunity_id:
            del self._live[opp.key]

    def purge(self, now: float | None = None) -> int:
        """Drop expired entries. Returns the number removed."""
        now = now if now is not None else time.time()
        expired = [k for k, (_, exp) in self._live.items() if exp <= now]
        for k in expired:
            del self._live[k]
        if expired:
            logger.debug("Dedupe purge: %d expired entries", len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._live)
