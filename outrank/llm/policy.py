from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, List, Sequence, TypeVar

from .. import config

T = TypeVar("T")


@dataclass
class PlatformCallPolicy:
    """
    How calls fan out across platforms.

    Default is one platform at a time with a short pause between calls, which
    keeps research under upstream rate limits. Raise `max_concurrency` only if
    the provider allows it; results always come back in platform order.
    """

    max_concurrency: int = config.PLATFORM_MAX_CONCURRENCY
    delay_s: float = config.PLATFORM_DELAY_S
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def map(self, platforms: Sequence[str], fn: Callable[[str], T]) -> List[T]:
        if self.max_concurrency <= 1 or len(platforms) <= 1:
            out: List[T] = []
            for i, platform in enumerate(platforms):
                if i and self.delay_s:
                    self.sleep(self.delay_s)
                out.append(fn(platform))
            return out

        with ThreadPoolExecutor(max_workers=min(self.max_concurrency, len(platforms))) as pool:
            return list(pool.map(fn, platforms))
