"""Rate-limited metadata queue.

The queue runs its worker in a real thread, but time is faked:
the injected sleep advances the injected clock.
"""

import threading
from collections import defaultdict

import pytest

from eth_multiread.exceptions import MetadataFetchError, RateLimited
from eth_multiread.metadata.cache import TokenMetadataCache, generate_cache_key
from eth_multiread.metadata.coingecko import TokenMetadata
from eth_multiread.metadata.queue import MetadataQueue


#: How long we wait for a future in real seconds
TIMEOUT = 10


def make_address(i: int) -> str:
    return "0x" + f"{i:040x}"


class FakeClock:
    """Monotonic clock that only moves when slept."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


class FakeCoinGecko:
    """Records calls and replies from a script.

    :param script:
        Lowercased address -> list of exceptions to raise before succeeding
    """

    def __init__(self, clock: FakeClock, script: dict | None = None):
        self.clock = clock
        self.script = defaultdict(list, script or {})
        self.calls: list[tuple[float, str]] = []
        self.on_fetch = None

    def fetch_token_metadata(self, chain_key, address) -> TokenMetadata:
        self.calls.append((self.clock(), address))
        if self.on_fetch:
            self.on_fetch()
        if self.script[address]:
            raise self.script[address].pop(0)
        return TokenMetadata(chain_key=chain_key, contract_address=address, name=f"Token {address[-2:]}", symbol="tok", decimals=18)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


def create_queue(clock: FakeClock, client: FakeCoinGecko, **kwargs) -> MetadataQueue:
    return MetadataQueue(client, retry_delay=5.0, sleep=clock.sleep, clock=clock, **kwargs)


def wait_idle(queue: MetadataQueue):
    if queue.worker is not None:
        queue.worker.join(TIMEOUT)
    assert not queue.is_draining


def test_fifo_order(clock):
    """Requests go out one by one in FIFO order, without the queue sleeping."""
    client = FakeCoinGecko(clock)
    queue = create_queue(clock, client)
    addresses = [make_address(i) for i in range(1, 6)]

    futures = queue.enqueue_many([(a, 1) for a in addresses])
    results = [f.result(timeout=TIMEOUT) for f in futures]
    wait_idle(queue)

    assert [r.contract_address for r in results] == addresses
    assert [address for _, address in client.calls] == addresses
    assert clock.sleeps == []
    assert queue.fetch_count == 5
    assert queue.get_cache_size() == 5


def test_rate_limited_entry_retried_first(clock):
    """429 on the second entry pauses the queue and retries it before the third."""
    a, b, c = make_address(1), make_address(2), make_address(3)
    client = FakeCoinGecko(clock, {b: [RateLimited("Too many requests")]})
    queue = create_queue(clock, client)

    futures = queue.enqueue_many([(a, 1), (b, 1), (c, 1)])
    results = [f.result(timeout=TIMEOUT) for f in futures]
    wait_idle(queue)

    assert all(r is not None for r in results)
    assert [address for _, address in client.calls] == [a, b, b, c]

    times = [t for t, _ in client.calls]
    assert times[2] - times[1] >= 5.0
    assert times == [0.0, 0.0, 5.0, 5.0]
    assert clock.sleeps == [5.0]
    assert queue.rate_limited_count == 1
    assert queue.fetch_count == 4


def test_retry_after_honoured(clock):
    """Longer server given back off wins over the configured one."""
    a = make_address(1)
    client = FakeCoinGecko(clock, {a: [RateLimited("Too many requests", retry_after=12.0)]})
    queue = create_queue(clock, client)

    assert queue.enqueue(a, 1).result(timeout=TIMEOUT) is not None
    assert 12.0 in clock.sleeps
    assert [t for t, _ in client.calls] == [0.0, 12.0]


def test_cache_hit_no_request(clock):
    """Cached tokens resolve immediately without a worker."""
    cache = TokenMetadataCache()
    address = make_address(1)
    meta = TokenMetadata(chain_key=1, contract_address=address, name="Cached", symbol="c", decimals=6)
    cache.insert(generate_cache_key(1, address), meta)

    client = FakeCoinGecko(clock)
    queue = create_queue(clock, client, cache=cache)
    future = queue.enqueue(address.upper().replace("0X", "0x"), 1)

    assert future.done()
    assert future.result() is meta
    assert client.calls == []
    assert queue.worker is None


def test_failure_cached_as_negative(clock):
    """Non-429 failures resolve to None and are not fetched again."""
    a = make_address(1)
    client = FakeCoinGecko(clock, {a: [MetadataFetchError("Not found", status_code=404, address=a)]})
    queue = create_queue(clock, client)

    assert queue.enqueue(a, 1).result(timeout=TIMEOUT) is None
    wait_idle(queue)

    again = queue.enqueue(a, 1)
    assert again.done()
    assert again.result() is None
    assert len(client.calls) == 1


def test_unmapped_chain(clock):
    """Chains without a CoinGecko platform resolve to None without an HTTP request."""
    client = FakeCoinGecko(clock)
    queue = create_queue(clock, client)

    assert queue.enqueue(make_address(1), 31337).result(timeout=TIMEOUT) is None
    wait_idle(queue)
    assert client.calls == []
    assert clock.sleeps == []
    assert generate_cache_key(31337, make_address(1)) in queue.cache


def test_duplicates_fetched_once(clock):
    """Same token queued twice makes one request."""
    client = FakeCoinGecko(clock)
    queue = create_queue(clock, client)
    a = make_address(1)

    first, second = queue.enqueue_many([(a, 1), (a.upper().replace("0X", "0x"), 1)])
    assert first.result(timeout=TIMEOUT) is second.result(timeout=TIMEOUT)
    assert len(client.calls) == 1


def test_fetch_many(clock):
    client = FakeCoinGecko(clock)
    queue = create_queue(clock, client)
    a, b = make_address(0xAB), make_address(2)

    result = queue.fetch_many([(a, 1), (b, 31337)], timeout=TIMEOUT)
    assert set(result.keys()) == {a.lower(), b}
    assert result[a.lower()].name == "Token ab"
    assert result[b] is None


def test_shared_cache(clock):
    """Two queues sharing a cache do not fetch the same token twice."""
    cache = TokenMetadataCache()
    client = FakeCoinGecko(clock)
    a = make_address(1)

    create_queue(clock, client, cache=cache).enqueue(a, 1).result(timeout=TIMEOUT)
    assert create_queue(clock, client, cache=cache).enqueue(a, 1).done()
    assert len(client.calls) == 1


def test_close(clock):
    """Closing abandons the rest of the queue."""
    client = FakeCoinGecko(clock)
    queue = create_queue(clock, client)
    client.on_fetch = lambda: queue.close(wait=False)

    a, b, c = make_address(1), make_address(2), make_address(3)
    futures = queue.enqueue_many([(a, 1), (b, 1), (c, 1)])
    results = [f.result(timeout=TIMEOUT) for f in futures]
    wait_idle(queue)

    assert results[0] is not None
    assert results[1:] == [None, None]
    assert len(client.calls) == 1

    # Abandoned lookups are not remembered as missing
    assert generate_cache_key(1, b) not in queue.cache

    with pytest.raises(RuntimeError):
        queue.enqueue(a, 1)


def test_enqueue_from_many_threads(clock):
    """Any thread can enqueue."""
    client = FakeCoinGecko(clock)
    queue = create_queue(clock, client)
    futures = []
    lock = threading.Lock()

    def worker(i):
        f = queue.enqueue(make_address(i), 1)
        with lock:
            futures.append(f)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(1, 11)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(TIMEOUT)

    assert all(f.result(timeout=TIMEOUT) is not None for f in futures)
    assert len(futures) == 10
    assert len(client.calls) == 10


class CrashingCache(TokenMetadataCache):
    """Cache that blows up when storing one address."""

    def __init__(self, bad_address: str):
        super().__init__()
        self.bad_address = bad_address

    def insert(self, key, value):
        if self.bad_address in key:
            raise RuntimeError("Disk full")
        return super().insert(key, value)


def test_worker_crash_resolves_entry(clock):
    """Unexpected error in a lookup resolves it to None and the queue keeps going."""
    a, b, c = make_address(1), make_address(2), make_address(3)
    client = FakeCoinGecko(clock)
    queue = create_queue(clock, client, cache=CrashingCache(a))

    first, second = queue.enqueue_many([(a, 1), (b, 1)])
    assert first.result(timeout=TIMEOUT) is None
    assert second.result(timeout=TIMEOUT).contract_address == b
    wait_idle(queue)

    # A new worker picks up later entries
    assert queue.enqueue(c, 1).result(timeout=TIMEOUT).contract_address == c
    wait_idle(queue)
    assert len(client.calls) == 3


def test_bad_chain_key(clock):
    """Chain keys that are not chain ids are refused before queueing."""
    client = FakeCoinGecko(clock)
    queue = create_queue(clock, client)

    for bad in ["²", "ethereum", "", -1, 1.0, None]:
        with pytest.raises(ValueError):
            queue.enqueue(make_address(1), bad)

    # Nothing from a refused batch gets queued
    with pytest.raises(ValueError):
        queue.enqueue_many([(make_address(2), 1), (make_address(3), "²")])

    assert queue.pending_count == 0
    assert queue.worker is None
    assert queue.enqueue(make_address(1), "1").result(timeout=TIMEOUT) is not None
    wait_idle(queue)
