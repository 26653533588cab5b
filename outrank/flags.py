from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from typing import Callable, Dict, Optional, Tuple

from . import config

logger = logging.getLogger(__name__)

TIERS = ("free", "starter", "pro", "agency")


@dataclass(frozen=True)
class FeatureFlags:
    tier: str
    is_subscriber: bool
    blur_competitors: bool
    show_all_competitors: bool
    editable_prompts: bool
    show_prd_tasks: bool
    geo_enhanced_prompts: bool
    unlimited_scans: bool
    export_reports: bool
    multi_domain: bool

    def as_dict(self) -> Dict[str, object]:
        return asdict(self)


_FREE = FeatureFlags(
    tier="free",
    is_subscriber=False,
    blur_competitors=True,
    show_all_competitors=False,
    editable_prompts=False,
    show_prd_tasks=False,
    geo_enhanced_prompts=True,
    unlimited_scans=False,
    export_reports=False,
    multi_domain=False,
)

_BY_TIER: Dict[str, FeatureFlags] = {
    "free": _FREE,
    "starter": FeatureFlags(
        tier="starter",
        is_subscriber=True,
        blur_competitors=False,
        show_all_competitors=True,
        editable_prompts=False,
        show_prd_tasks=False,
        geo_enhanced_prompts=True,
        unlimited_scans=False,
        export_reports=False,
        multi_domain=False,
    ),
    "pro": FeatureFlags(
        tier="pro",
        is_subscriber=True,
        blur_competitors=False,
        show_all_competitors=True,
        editable_prompts=True,
        show_prd_tasks=True,
        geo_enhanced_prompts=True,
        unlimited_scans=True,
        export_reports=True,
        multi_domain=False,
    ),
    "agency": FeatureFlags(
        tier="agency",
        is_subscriber=True,
        blur_competitors=False,
        show_all_competitors=True,
        editable_prompts=True,
        show_prd_tasks=True,
        geo_enhanced_prompts=True,
        unlimited_scans=True,
        export_reports=True,
        multi_domain=True,
    ),
}


def flags_for_tier(tier: str) -> FeatureFlags:
    """Unknown tiers get the free flag set."""
    return _BY_TIER.get((tier or "").lower(), _FREE)


class FlagCache:
    """
    Per-lead flag cache with a TTL.

    `loader(lead_id)` returns a tier; the clock is injectable so expiry can be
    tested without sleeping. `invalidate()` drops one lead, or everything.
    """

    def __init__(
        self,
        loader: Callable[[str], str],
        ttl_s: float = config.FLAG_CACHE_TTL_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.loader = loader
        self.ttl_s = ttl_s
        self.clock = clock
        self._entries: Dict[str, Tuple[float, FeatureFlags]] = {}

    def get(self, lead_id: str) -> FeatureFlags:
        now = self.clock()
        hit = self._entries.get(lead_id)
        if hit is not None and now - hit[0] < self.ttl_s:
            return hit[1]

        flags = flags_for_tier(self.loader(lead_id))
        self._entries[lead_id] = (now, flags)
        logger.debug("flags loaded for lead %s: tier=%s", lead_id, flags.tier)
        return flags

    def invalidate(self, lead_id: Optional[str] = None) -> None:
        if lead_id is None:
            self._entries.clear()
        else:
            self._entries.pop(lead_id, None)
