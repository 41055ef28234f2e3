"""CoinGecko token metadata API.

- Python wrapper for CoinGecko ``/coins/{platform}/contract/{address}`` endpoint

- Gives token name, symbol, decimals, icon and USD price for an ERC-20 contract

- Requests are rate limited by the session, see :py:func:`create_coingecko_session`.
  Backing off on 429 is done by :py:class:`eth_multiread.metadata.queue.MetadataQueue`

- `Read CoinGecko API documentation <https://docs.coingecko.com/reference/coins-contract-address>`__

Example:

.. code-block:: python

    coingecko = CoinGecko(api_key=os.environ.get("COINGECKO_API_KEY"))
    meta = coingecko.fetch_token_metadata(1, "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48")
    assert meta.symbol == "usdc"

"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

import requests
from eth_typing import HexAddress
from requests import Session
from requests_ratelimiter import LimiterAdapter

from eth_multiread.exceptions import MetadataFetchError, RateLimited
from eth_multiread.logging_retry import LoggingRetry


logger = logging.getLogger(__name__)


#: Free and demo API endpoint
COINGECKO_API_URL = "https://api.coingecko.com/api/v3"

#: Paid API endpoint
COINGECKO_PRO_API_URL = "https://pro-api.coingecko.com/api/v3"

#: HTTP request timeout in seconds
DEFAULT_HTTP_TIMEOUT = 30.0

#: How many times we retry network level failures and 5xx replies.
#:
#: 429 is never retried here, the queue backs off for it.
DEFAULT_HTTP_RETRIES = 2

#: Minimum seconds between two API requests
DEFAULT_REQUEST_INTERVAL = 1.0

#: Decimals when CoinGecko does not tell
DEFAULT_DECIMALS = 18

#: Chain id -> CoinGecko asset platform id
#:
#: See https://api.coingecko.com/api/v3/asset_platforms
CHAIN_TO_PLATFORM = {
    1: "ethereum",
    10: "optimistic-ethereum",
    56: "binance-smart-chain",
    100: "xdai",
    137: "polygon-pos",
    250: "fantom",
    369: "pulsechain",
    8453: "base",
    42161: "arbitrum-one",
    43114: "avalanche",
}


@dataclass(frozen=True, slots=True)
class TokenMetadata:
    """Off-chain token metadata.

    Created once per (chain, address) and never refreshed.
    """

    #: Chain id or other chain key we were asked with
    chain_key: int | str

    #: Lowercased contract address
    contract_address: str

    #: Token name e.g. ``USDC``
    name: str

    #: Token symbol, CoinGecko gives these lowercased e.g. ``usdc``
    symbol: str

    #: Decimals on this chain
    decimals: int

    #: Small token image
    icon_url: str | None = None

    #: Current USD price
    price_usd: Decimal | None = None

    #: CoinGecko platform id of the matched contract e.g. ``arbitrum-one``
    chain_label: str | None = None

    def __repr__(self):
        return f"<TokenMetadata {self.name} ({self.symbol}) at {self.contract_address} on {self.chain_key}, price {self.price_usd}>"


def get_platform_id(chain_key: int | str) -> str | None:
    """Map chain id to CoinGecko platform id.

    :param chain_key:
        Chain id as int or a numeric string

    :return:
        Platform id or ``None`` if CoinGecko lookups are not supported for the chain
    """
    if type(chain_key) == str:
        if not chain_key.strip().isdecimal():
            return None
        chain_key = int(chain_key)
    return CHAIN_TO_PLATFORM.get(chain_key)


def _parse_price(value: Any) -> Decimal | None:
    if value is None or type(value) == bool:
        return None
    try:
        # Via str so we get the JSON float as written, not its binary expansion
        return Decimal(str(value))
    except InvalidOperation:
        return None


def parse_token_metadata(data: dict, chain_key: int | str, address: str) -> TokenMetadata:
    """Parse CoinGecko ``/coins/{platform}/contract/{address}`` reply.

    - Decimals and chain label come from the ``detail_platforms`` entry
      whose contract address matches ours

    - Icon is ``image.small``, falling back to ``image.thumb``

    :raise KeyError:
        Name or symbol missing
    """
    address = address.lower()

    decimals = DEFAULT_DECIMALS
    chain_label = None
    for platform_id, platform in (data.get("detail_platforms") or {}).items():
        if not platform:
            continue
        contract_address = platform.get("contract_address") or ""
        if contract_address.lower() == address:
            if platform.get("decimal_place") is not None:
                decimals = int(platform["decimal_place"])
            chain_label = platform_id
            break

    image = data.get("image") or {}
    icon_url = image.get("small") or image.get("thumb")

    market_data = data.get("market_data") or {}
    price_usd = _parse_price((market_data.get("current_price") or {}).get("usd"))

    return TokenMetadata(
        chain_key=chain_key,
        contract_address=address,
        name=data["name"],
        symbol=data["symbol"],
        decimals=decimals,
        icon_url=icon_url,
        price_usd=price_usd,
        chain_label=chain_label,
    )


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        # HTTP date format, we do not bother
        return None


def create_coingecko_session(
    retries: int = DEFAULT_HTTP_RETRIES,
    request_interval: float = DEFAULT_REQUEST_INTERVAL,
) -> Session:
    """Create a requests Session for CoinGecko.

    - Rate limited with :py:class:`requests_ratelimiter.LimiterAdapter`,
      at most one request per ``request_interval`` seconds across all threads sharing the session

    - A 429 reply fills the limiter bucket, so the next request waits a full interval

    - Retries connection errors and 5xx replies with :py:class:`LoggingRetry`

    - Leaves 429 retries to the caller, see :py:class:`eth_multiread.metadata.queue.MetadataQueue`

    :param retries:
        How many times to retry network failures and 5xx replies

    :param request_interval:
        Seconds between requests.
        CoinGecko free and demo APIs allow roughly 30 requests per minute.
    """
    assert request_interval > 0, f"Bad request interval {request_interval}"

    session = Session()
    retry_policy = LoggingRetry(
        total=retries,
        backoff_factor=0.5,
        status_forcelist=[500, 502, 503, 504],
        respect_retry_after_header=False,
        raise_on_status=False,
        logger=logger,
    )
    adapter = LimiterAdapter(
        per_second=1 / request_interval,
        max_retries=retry_policy,
        limit_statuses=(429,),
    )
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


class CoinGecko:
    """CoinGecko API."""

    def __init__(
        self,
        api_key: str | None = None,
        session: Session | None = None,
        api_url: str | None = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        request_interval: float = DEFAULT_REQUEST_INTERVAL,
    ):
        """
        :param api_key:
            Demo or pro API key. Free API works without one, with tighter limits.

        :param session:
            Custom requests session

        :param api_url:
            Override the endpoint, e.g. for the pro API

        :param request_interval:
            Seconds between requests, when we create the session
        """
        if api_key is not None:
            assert api_key.strip() == api_key, "API key has whitespace"

        self.api_key = api_key

        if api_url is None:
            api_url = COINGECKO_API_URL
        self.api_url = api_url.rstrip("/")

        if session is None:
            session = create_coingecko_session(request_interval=request_interval)
        self.session = session
        self.timeout = timeout

    def __repr__(self):
        return f"<CoinGecko {self.api_url}>"

    def get_headers(self) -> dict:
        headers = {"accept": "application/json"}
        if self.api_key:
            if "pro-api" in self.api_url:
                headers["x-cg-pro-api-key"] = self.api_key
            else:
                headers["x-cg-demo-api-key"] = self.api_key
        return headers

    def fetch_token_metadata(self, chain_key: int | str, address: str | HexAddress) -> TokenMetadata:
        """Get token metadata.

        This is a synchronous method, one HTTP GET.

        :param chain_key:
            Chain id. Must be mapped in :py:data:`CHAIN_TO_PLATFORM`.

        :param address:
            ERC-20 smart contract address.

        :raise RateLimited:
            CoinGecko replied 429

        :raise MetadataFetchError:
            CoinGecko does not know the token, or gave a reply we cannot use

        :raise requests.exceptions.RequestException:
            Network failure
        """
        assert address.startswith("0x"), f"Bad address {address}"

        platform_id = get_platform_id(chain_key)
        if platform_id is None:
            raise MetadataFetchError(f"Chain {chain_key} has no CoinGecko platform", status_code=None, address=address)

        url = f"{self.api_url}/coins/{platform_id}/contract/{address.lower()}"

        logger.info("Fetching CoinGecko data %s: %s", platform_id, address)

        resp = self.session.get(url, headers=self.get_headers(), timeout=self.timeout)

        if resp.status_code == 429:
            raise RateLimited(
                f"CoinGecko rate limited on {address}",
                retry_after=_parse_retry_after(resp.headers.get("Retry-After")),
            )

        if resp.status_code != 200:
            raise MetadataFetchError(
                f"CoinGecko replied on address {address}: {resp.status_code}: {resp.text[0:200]}",
                status_code=resp.status_code,
                address=address,
            )

        try:
            data = resp.json()
            return parse_token_metadata(data, chain_key, address)
        except (requests.exceptions.JSONDecodeError, ValueError, KeyError, TypeError, AttributeError) as e:
            raise MetadataFetchError(f"Bad CoinGecko reply for {address}: {e}", status_code=resp.status_code, address=address) from e
