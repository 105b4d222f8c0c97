"""
Per-process memo of computed no-fit polygons.

Entries are keyed by value (shape identities plus quantised rotations), so
two keys built from equal inputs always hit the same entry. The cache owns
its entries: callers can never observe or cause mutation of cached data.
"""

import copy
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import psutil

from nesting_errors import NfpCacheError

logger = logging.getLogger(__name__)

ROTATION_DECIMALS = 6


def quantize_rotation(degrees: float) -> float:
    """Normalise a rotation to [0, 360) at six decimals."""
    value = round(float(degrees) % 360.0, ROTATION_DECIMALS)
    # 359.9999999 rounds up to 360.0
    return 0.0 if value >= 360.0 else value + 0.0


@dataclass(frozen=True)
class CacheKey:
    """Identity of an NFP: which shapes, at which rotations."""
    a_source: str
    b_source: str
    a_rotation: float
    b_rotation: float

    @classmethod
    def build(cls, a_source: Any, b_source: Any, a_rotation: float, b_rotation: float) -> 'CacheKey':
        return cls(str(a_source), str(b_source), quantize_rotation(a_rotation), quantize_rotation(b_rotation))

    def __str__(self) -> str:
        return f"A{self.a_source}B{self.b_source}Arot{self.a_rotation:.6f}Brot{self.b_rotation:.6f}"


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    inner: bool


class NfpCache:
    """Memo of outer NFPs and inner-fit region lists"""

    def __init__(self, max_memory_mb: Optional[float] = None):
        self.max_memory_mb = max_memory_mb
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self.hits = 0
        self.misses = 0
        self.inserts = 0
        self.skipped = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: CacheKey) -> bool:
        return self.has(key)

    def has(self, key: CacheKey) -> bool:
        return key in self._entries

    def find(self, key: CacheKey, inner: bool = False) -> Optional[Any]:
        """
        Return a private copy of the entry, or None on a miss.

        Asking for the inner variant of an outer entry (or the reverse) is a
        programming error and raises NfpCacheError.
        """
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        if entry.inner != inner:
            raise NfpCacheError(
                f"Cache entry {key} is {'inner' if entry.inner else 'outer'}, "
                f"requested {'inner' if inner else 'outer'}"
            )
        self.hits += 1
        return copy.deepcopy(entry.value)

    def insert(self, key: CacheKey, value: Any, inner: bool = False) -> bool:
        """Store a private copy; returns False when the memory guard skipped the insert."""
        if self._over_memory_limit():
            self.skipped += 1
            logger.debug(f"NFP cache insert skipped for {key}: memory limit {self.max_memory_mb}MB reached")
            return False
        if inner and not isinstance(value, (list, tuple)):
            raise NfpCacheError(f"Inner entry {key} must be a sequence of regions")
        self._entries[key] = CacheEntry(copy.deepcopy(value), inner)
        self.inserts += 1
        return True

    def clear(self):
        if self._entries:
            logger.debug(f"NFP cache cleared ({len(self._entries)} entries)")
        self._entries.clear()

    def stats(self) -> Dict[str, Any]:
        return {
            'entries': len(self._entries),
            'hits': self.hits,
            'misses': self.misses,
            'inserts': self.inserts,
            'skipped': self.skipped,
        }

    def _over_memory_limit(self) -> bool:
        if not self.max_memory_mb:
            return False
        rss_mb = psutil.Process().memory_info().rss / 1024 / 1024
        return rss_mb > self.max_memory_mb
