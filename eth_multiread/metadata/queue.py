"""Rate-limited token metadata enrichment queue.

Fetch CoinGecko metadata for many tokens without hitting the API rate limit.

- One background worker thread per queue, started when the first entry arrives
  and exiting when the queue is empty

- At most one request in flight. The requests-per-second ceiling is enforced by the
  rate limited CoinGecko session, see :py:func:`eth_multiread.metadata.coingecko.create_coingecko_session`

- On HTTP 429 the entry goes back to the front of the queue and the whole queue
  pauses for ``retry_delay`` seconds

- Every other failure resolves to ``None`` and is cached as a negative result

- Results are delivered as :py:class:`concurrent.futures.Future`

Example:

.. code-block:: python

    queue = MetadataQueue(CoinGecko(api_key=api_key, request_interval=2.0))
    future = queue.enqueue(usdc_address, 1)
    meta = future.result(timeout=60)
    if meta:
        print(meta.name, meta.price_usd)

"""

import logging
import threading
import time
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Callable, Iterable

from eth_typing import HexAddress

from eth_multiread.exceptions import RateLimited
from eth_multiread.metadata.cache import TokenMetadataCache, generate_cache_key
from eth_multiread.metadata.coingecko import CoinGecko, TokenMetadata, get_platform_id


logger = logging.getLogger(__name__)


#: Seconds to pause the queue after HTTP 429
DEFAULT_RETRY_DELAY = 5.0


def is_valid_chain_key(chain_key) -> bool:
    """Chain id as an int, or a string of ASCII digits like ``"137"``."""
    if type(chain_key) == int:
        return chain_key >= 0
    return type(chain_key) == str and chain_key.isascii() and chain_key.isdecimal()


@dataclass(slots=True)
class QueueEntry:
    """One pending metadata lookup."""

    #: Lowercased token address
    contract_address: str

    #: Chain id
    chain_key: int | str

    #: Resolved with :py:class:`TokenMetadata` or ``None``
    future: Future

    #: Future has been marked running and can no longer be cancelled
    started: bool = False


class MetadataQueue:
    """Fetch token metadata one by one under a rate limit.

    - State is ``idle`` or ``draining``, see :py:attr:`is_draining`

    - Thread safe, any thread can enqueue
    """

    def __init__(
        self,
        client: CoinGecko | None = None,
        cache: TokenMetadataCache | None = None,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        :param client:
            CoinGecko client. Default is the free API with its default rate limit.

        :param cache:
            Shared cache. Give the same cache to several queues to share results.

        :param retry_delay:
            Seconds to back off after HTTP 429.
            If the server asks for a longer ``Retry-After``, we use that.

        :param sleep:
            Sleep function, for testing.

        :param clock:
            Monotonic clock, for testing.
        """
        assert retry_delay >= 0, f"Bad retry delay {retry_delay}"

        if client is None:
            client = CoinGecko()

        if cache is None:
            cache = TokenMetadataCache()

        self.client = client
        self.cache = cache
        self.retry_delay = retry_delay
        self.sleep = sleep
        self.clock = clock

        self.lock = threading.Lock()
        self.entries: deque[QueueEntry] = deque()
        self.draining = False
        self.closed = False
        self.worker: threading.Thread | None = None

        #: Number of API requests made, for diagnostics
        self.fetch_count = 0

        #: Number of 429 replies received
        self.rate_limited_count = 0

    def __repr__(self):
        return f"<MetadataQueue pending:{self.pending_count} draining:{self.draining} cache:{self.get_cache_size()}>"

    @property
    def is_draining(self) -> bool:
        with self.lock:
            return self.draining

    @property
    def pending_count(self) -> int:
        with self.lock:
            return len(self.entries)

    def get_cache_size(self) -> int:
        return len(self.cache)

    def clear_cache(self):
        self.cache.clear()

    def enqueue(self, address: HexAddress | str, chain_key: int | str) -> Future:
        """Ask metadata for a token.

        :return:
            Future resolving to :py:class:`TokenMetadata`, or ``None`` if there is no metadata.
            Already resolved if the token is cached.

        :raise RuntimeError:
            The queue has been closed
        """
        return self.enqueue_many([(address, chain_key)])[0]

    def enqueue_many(self, requests: Iterable[tuple[HexAddress | str, int | str]]) -> list[Future]:
        """Ask metadata for several tokens.

        All entries are added to the queue at once, in the given order.

        :param requests:
            (address, chain id) tuples

        :return:
            One future per request

        :raise ValueError:
            Bad chain key. Nothing is queued.
        """
        if self.closed:
            raise RuntimeError("MetadataQueue is closed")

        futures = []
        new_entries = []
        for address, chain_key in requests:
            assert type(address) == str and address.startswith("0x"), f"Bad address {address}"
            if not is_valid_chain_key(chain_key):
                raise ValueError(f"Chain key must be a chain id as int or decimal string, got {chain_key!r}")
            future = Future()
            hit, value = self.cache.lookup(generate_cache_key(chain_key, address))
            if hit:
                future.set_result(value)
            else:
                new_entries.append(QueueEntry(contract_address=address.lower(), chain_key=chain_key, future=future))
            futures.append(future)

        with self.lock:
            if self.closed:
                raise RuntimeError("MetadataQueue is closed")
            self.entries.extend(new_entries)
            if new_entries and not self.draining:
                self.draining = True
                self.worker = threading.Thread(target=self._drain, name="metadata-queue", daemon=True)
                self.worker.start()

        if new_entries:
            logger.debug("Queued %d metadata lookups", len(new_entries))

        return futures

    def fetch_many(
        self,
        requests: Iterable[tuple[HexAddress | str, int | str]],
        timeout: float | None = None,
    ) -> dict[str, TokenMetadata | None]:
        """Fetch metadata for several tokens and wait for all of them.

        :param timeout:
            Max seconds to wait for each token

        :return:
            Lowercased address -> metadata or ``None``.
            If the same address is asked on several chains, the last one wins.

        :raise concurrent.futures.TimeoutError:
            Took too long
        """
        requests = list(requests)
        futures = self.enqueue_many(requests)
        return {address.lower(): future.result(timeout=timeout) for (address, _), future in zip(requests, futures)}

    def close(self, wait: bool = True, timeout: float | None = None):
        """Stop the worker after the entry it is working on.

        - Entries still in the queue resolve to ``None``, and are not cached

        - Further enqueues raise :py:class:`RuntimeError`
        """
        with self.lock:
            self.closed = True
            worker = self.worker

        if wait and worker is not None and worker is not threading.current_thread():
            worker.join(timeout)

    def _drain(self):
        """Worker thread main loop.

        Every popped entry gets resolved, even if processing it crashes.
        """
        started = self.clock()
        processed = 0
        leftovers = []
        exited_cleanly = False

        try:
            while True:
                with self.lock:
                    if self.closed:
                        leftovers = list(self.entries)
                        self.entries.clear()
                        self.draining = False
                        exited_cleanly = True
                        break

                    if not self.entries:
                        self.draining = False
                        exited_cleanly = True
                        break

                    entry = self.entries.popleft()

                if not entry.started:
                    if not entry.future.set_running_or_notify_cancel():
                        # Cancelled by the caller
                        continue
                    entry.started = True

                try:
                    done = self._process(entry)
                except Exception as e:
                    logger.error("Metadata lookup for %s on chain %r crashed", entry.contract_address, entry.chain_key, exc_info=e)
                    if not entry.future.done():
                        entry.future.set_result(None)
                    done = True

                if done:
                    processed += 1
        finally:
            if not exited_cleanly:
                # Let the next enqueue start a new worker
                with self.lock:
                    self.draining = False

        for entry in leftovers:
            if entry.started or entry.future.set_running_or_notify_cancel():
                entry.future.set_result(None)

        if leftovers:
            logger.info("Metadata queue closed, %d lookups abandoned", len(leftovers))

        logger.info("Metadata queue drained, %d lookups in %f seconds", processed, self.clock() - started)

    def _process(self, entry: QueueEntry) -> bool:
        """Resolve one entry.

        :return:
            False if the entry was put back to the queue
        """
        key = generate_cache_key(entry.chain_key, entry.contract_address)

        # A duplicate of an entry resolved while this one was waiting
        hit, value = self.cache.lookup(key)
        if hit:
            entry.future.set_result(value)
            return True

        if get_platform_id(entry.chain_key) is None:
            logger.info("No CoinGecko platform for chain %s, skipping %s", entry.chain_key, entry.contract_address)
            entry.future.set_result(self.cache.insert(key, None))
            return True

        self.fetch_count += 1

        try:
            meta = self.client.fetch_token_metadata(entry.chain_key, entry.contract_address)
        except RateLimited as e:
            self.rate_limited_count += 1
            delay = max(self.retry_delay, e.retry_after or 0)
            logger.warning("CoinGecko rate limited on %s, pausing the queue for %f seconds", entry.contract_address, delay)
            with self.lock:
                self.entries.appendleft(entry)
            self.sleep(delay)
            return False
        except Exception as e:
            logger.error("Could not fetch metadata for %s on chain %s: %s", entry.contract_address, entry.chain_key, e)
            meta = None

        entry.future.set_result(self.cache.insert(key, meta))
        return True
