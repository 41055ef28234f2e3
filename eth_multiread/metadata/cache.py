"""Token metadata cache.

- Keyed by ``{chain}-{lowercased address}``

- Insert-once: the first stored value for a key wins, later inserts return it

- Positive entries live as long as the cache object

- Negative entries (``None``, no metadata) are permanent by default,
  or expire after ``negative_ttl`` seconds if configured

- Thread safe
"""

import logging
import threading
import time
from typing import Callable, Hashable

from cachetools import TTLCache

from eth_multiread.metadata.coingecko import TokenMetadata


logger = logging.getLogger(__name__)


#: How many negative entries we keep when they expire
DEFAULT_NEGATIVE_MAXSIZE = 4096


def generate_cache_key(chain_key: int | str, address: str) -> str:
    """Cache key for a token on a chain."""
    assert type(address) == str, f"Got {address}"
    return f"{chain_key}-{address.lower()}"


class TokenMetadataCache:
    """In-process cache of fetched token metadata.

    Example:

    .. code-block:: python

        cache = TokenMetadataCache(negative_ttl=3600)
        key = generate_cache_key(1, usdc_address)
        hit, meta = cache.lookup(key)
        if not hit:
            meta = cache.insert(key, fetch(...))

    """

    def __init__(
        self,
        negative_ttl: float | None = None,
        negative_maxsize: int = DEFAULT_NEGATIVE_MAXSIZE,
        timer: Callable[[], float] = time.monotonic,
    ):
        """
        :param negative_ttl:
            Seconds until a failed lookup can be tried again.
            ``None`` means never.

        :param negative_maxsize:
            Max number of negative entries when ``negative_ttl`` is set.

        :param timer:
            Clock for negative TTL, for testing.
        """
        self.lock = threading.Lock()
        self.negative_ttl = negative_ttl
        self.positive: dict[Hashable, TokenMetadata] = {}
        if negative_ttl is None:
            self.negative: dict | TTLCache = {}
        else:
            assert negative_ttl > 0, f"Bad negative TTL {negative_ttl}"
            self.negative = TTLCache(maxsize=negative_maxsize, ttl=negative_ttl, timer=timer)

    def __repr__(self):
        return f"<TokenMetadataCache {len(self.positive)} found, {len(self.negative)} missing>"

    def __len__(self):
        with self.lock:
            return len(self.positive) + len(self.negative)

    def __contains__(self, key: Hashable) -> bool:
        hit, _ = self.lookup(key)
        return hit

    def lookup(self, key: Hashable) -> tuple[bool, TokenMetadata | None]:
        """Get a cached entry.

        :return:
            Tuple (hit, metadata). Metadata is ``None`` for a cached negative result.
        """
        with self.lock:
            if key in self.positive:
                return True, self.positive[key]
            if key in self.negative:
                return True, None
            return False, None

    def insert(self, key: Hashable, value: TokenMetadata | None) -> TokenMetadata | None:
        """Store a fetch result unless the key already has one.

        :param value:
            Metadata, or ``None`` for no metadata.

        :return:
            The value now in the cache for the key
        """
        with self.lock:
            if key in self.positive:
                return self.positive[key]
            if key in self.negative:
                return None
            if value is None:
                self.negative[key] = True
            else:
                self.positive[key] = value
            return value

    def clear(self):
        with self.lock:
            self.positive.clear()
            self.negative.clear()
