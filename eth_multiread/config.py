"""Configuration from environment variables.

- ``JSON_RPC_{CHAIN_NAME}`` e.g. ``JSON_RPC_ETHEREUM``: JSON-RPC URL per chain

- ``COINGECKO_API_KEY``: optional CoinGecko demo or pro API key

- ``COINGECKO_API_URL``: optional CoinGecko endpoint override

- ``MULTICALL_ADDRESS``: optional Multicall3 address override
"""

import logging
import os
from dataclasses import dataclass
from typing import Mapping

from web3 import HTTPProvider, Web3

from eth_multiread.chain import CHAIN_NAMES
from eth_multiread.metadata.cache import TokenMetadataCache
from eth_multiread.metadata.coingecko import COINGECKO_API_URL, DEFAULT_HTTP_TIMEOUT, DEFAULT_REQUEST_INTERVAL, CoinGecko
from eth_multiread.metadata.queue import DEFAULT_RETRY_DELAY, MetadataQueue
from eth_multiread.multicall import DEFAULT_ATTEMPTS, DEFAULT_RETRY_SLEEP, MulticallClient
from eth_multiread.utils import get_url_domain


logger = logging.getLogger(__name__)


def get_json_rpc_env(chain: int) -> str:
    """Get the JSON-RPC URL environment variable based on the chain id.

    - Map chain id to a name and from there to environment variables.
    """
    chain_name = CHAIN_NAMES.get(chain)
    assert chain_name, f"CHAIN_NAMES not configured for chain {chain}"
    return f"JSON_RPC_{chain_name.upper()}"


def read_json_rpc_url(chain: int, environ: Mapping[str, str] | None = None) -> str:
    """Read JSON-RPC URL from environment variable based on the chain id.

    :raise ValueError:
        If the environment variable is not set for the given chain.
    """
    assert type(chain) is int, f"Chain ID must be an integer: {type(chain)}"
    if environ is None:
        environ = os.environ
    env_var = get_json_rpc_env(chain)
    json_rpc_url = environ.get(env_var)
    if not json_rpc_url:
        raise ValueError(f"Environment variable {env_var} is not set for chain {chain}")
    return json_rpc_url


def create_web3(rpc_url: str, timeout: float = DEFAULT_HTTP_TIMEOUT) -> Web3:
    """Create a Web3 connection for multicall reads.

    - Does not call the node

    - web3.py own retries are off, :py:class:`MulticallClient` retries itself
    """
    logger.info("Using JSON-RPC %s", get_url_domain(rpc_url))
    provider = HTTPProvider(
        rpc_url,
        request_kwargs={"timeout": timeout},
        exception_retry_configuration=None,
    )
    return Web3(provider)


@dataclass(slots=True)
class MultireadConfig:
    """All tunables in one place."""

    #: CoinGecko API key, if any
    coingecko_api_key: str | None = None

    #: CoinGecko endpoint
    coingecko_api_url: str = COINGECKO_API_URL

    #: Multicall3 address override
    multicall_address: str | None = None

    #: Max calls per eth_call, ``None`` to send each batch as one eth_call
    batch_size: int | None = None

    #: eth_call attempts on retryable failures
    multicall_attempts: int = DEFAULT_ATTEMPTS

    #: Seconds between eth_call attempts
    multicall_retry_sleep: float = DEFAULT_RETRY_SLEEP

    #: Seconds between CoinGecko requests
    request_interval: float = DEFAULT_REQUEST_INTERVAL

    #: Seconds to back off after CoinGecko 429
    retry_delay: float = DEFAULT_RETRY_DELAY

    #: Seconds until a failed metadata lookup may be retried, ``None`` for never
    negative_ttl: float | None = None

    #: HTTP timeout for CoinGecko and JSON-RPC
    http_timeout: float = DEFAULT_HTTP_TIMEOUT

    @staticmethod
    def from_env(environ: Mapping[str, str] | None = None) -> "MultireadConfig":
        """Read settings from environment variables, defaults for the rest."""
        if environ is None:
            environ = os.environ
        return MultireadConfig(
            coingecko_api_key=environ.get("COINGECKO_API_KEY") or None,
            coingecko_api_url=environ.get("COINGECKO_API_URL") or COINGECKO_API_URL,
            multicall_address=environ.get("MULTICALL_ADDRESS") or None,
        )

    def create_multicall_client(self, web3: Web3, chain_id: int | None = None) -> MulticallClient:
        return MulticallClient(
            web3,
            address=self.multicall_address,
            chain_id=chain_id,
            batch_size=self.batch_size,
            attempts=self.multicall_attempts,
            retry_sleep=self.multicall_retry_sleep,
        )

    def create_metadata_queue(self, cache: TokenMetadataCache | None = None) -> MetadataQueue:
        if cache is None:
            cache = TokenMetadataCache(negative_ttl=self.negative_ttl)
        client = CoinGecko(
            api_key=self.coingecko_api_key,
            api_url=self.coingecko_api_url,
            timeout=self.http_timeout,
            request_interval=self.request_interval,
        )
        return MetadataQueue(
            client,
            cache=cache,
            retry_delay=self.retry_delay,
        )
