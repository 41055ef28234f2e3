"""Token balances and token info through one multicall batch.

Read ERC-20 ``name``, ``symbol``, ``decimals`` and ``balanceOf`` for a set of tokens and holders,
with everything going out as one batch (or as few chunks as the batch size allows).

- Tokens that do not implement a method, or revert, still give a result: the failing field
  is ``None`` and the reason is recorded

- Old tokens like MKR return ``bytes32`` instead of ``string`` for ``name`` and ``symbol``,
  we decode these too

Example:

.. code-block:: python

    client = MulticallClient(web3)
    balances = read_token_balances(client, tokens=[usdc, weth], holders=[alice, bob])
    for b in balances:
        print(b.holder, b.token.symbol, b.formatted or b.error)

"""

import logging
from dataclasses import dataclass, field
from typing import Iterable

from eth_typing import BlockIdentifier, HexAddress

from eth_multiread.amount import Amount
from eth_multiread.batch import BalanceRequest, BatchBuilder, CallTag, ContractReadRequest, TokenInfoRequest
from eth_multiread.decoder import DecodedValue, decode_results
from eth_multiread.multicall import MulticallClient
from eth_multiread.utils import sanitise_string


logger = logging.getLogger(__name__)

#: Max length of token name or symbol we accept, some spam tokens have very long ones
MAX_STRING_LENGTH = 256


@dataclass(slots=True)
class TokenInfo:
    """ERC-20 token info read on-chain.

    - Any field can be ``None`` for non-well-formed tokens
    """

    #: Token address as given by the caller
    address: HexAddress | str

    #: Token name e.g. ``USD Circle``
    name: str | None = None

    #: Token symbol e.g. ``USDC``
    symbol: str | None = None

    #: Number of decimals
    decimals: int | None = None

    #: Failed method name -> reason
    failures: dict[str, str] = field(default_factory=dict)

    def __repr__(self):
        return f"<{self.name} ({self.symbol}) at {self.address}, {self.decimals} decimals>"

    def is_complete(self) -> bool:
        """All three info calls succeeded."""
        return not self.failures


@dataclass(frozen=True, slots=True)
class TokenBalance:
    """One row of a balance sheet."""

    #: Whose balance
    holder: HexAddress | str

    #: Which token
    token: TokenInfo

    #: ``balanceOf()`` result in raw units, ``None`` if the call failed
    raw_balance: int | None

    #: Raw balance with the token decimals, ``None`` if we do not know both
    amount: Amount | None

    #: Human readable balance e.g. ``"1.5"``
    formatted: str | None

    #: Did ``balanceOf()`` succeed
    success: bool

    #: Why the call failed, or why we could not format the amount
    error: str | None

    #: Original return data
    raw: bytes

    def __repr__(self):
        return f"<TokenBalance {self.holder} {self.token.symbol} {self.formatted if self.success else self.error}>"


def decode_bytes32_string(raw: bytes) -> str | None:
    """Decode a right padded ``bytes32`` string like MKR ``symbol()``."""
    if len(raw) != 32:
        return None
    try:
        return raw.rstrip(b"\x00").decode("utf-8")
    except UnicodeDecodeError:
        return None


def decode_string_value(value: DecodedValue) -> tuple[str | None, str | None]:
    """Get a string field, falling back to bytes32.

    :return:
        Tuple (string, failure reason)
    """
    if value.success:
        return sanitise_string(value.value, MAX_STRING_LENGTH), None

    if value.reason and value.reason.startswith("decode error"):
        fallback = decode_bytes32_string(value.raw)
        if fallback is not None:
            return sanitise_string(fallback, MAX_STRING_LENGTH), None

    return None, value.reason


def collect_token_info(values: Iterable[DecodedValue]) -> dict[str, TokenInfo]:
    """Assemble :py:class:`TokenInfo` from decoded token info calls.

    Values not tagged as token info calls are ignored.

    :return:
        Lowercased token address -> token info
    """
    infos = {}
    for value in values:
        tag = value.call.tag
        if not (isinstance(tag, CallTag) and isinstance(tag.request, TokenInfoRequest)):
            continue

        address = tag.request.token
        info = infos.get(address.lower())
        if info is None:
            info = infos[address.lower()] = TokenInfo(address=address)

        match tag.field:
            case "name" | "symbol":
                text, reason = decode_string_value(value)
                setattr(info, tag.field, text)
                if reason:
                    info.failures[tag.field] = reason
            case "decimals":
                if value.success:
                    info.decimals = value.value
                else:
                    info.failures["decimals"] = value.reason
            case _:
                raise AssertionError(f"Unknown token info field: {tag.field}")

    for info in infos.values():
        if info.failures:
            logger.info("Token %s info incomplete: %s", info.address, info.failures)

    return infos


def create_token_balance(value: DecodedValue, token: TokenInfo) -> TokenBalance:
    """Turn a decoded ``balanceOf()`` to a balance sheet row."""
    request = value.call.tag.request
    assert isinstance(request, BalanceRequest), f"Not a balance call: {value.call}"

    if not value.success:
        return TokenBalance(
            holder=request.holder,
            token=token,
            raw_balance=None,
            amount=None,
            formatted=None,
            success=False,
            error=value.reason,
            raw=value.raw,
        )

    raw_balance = value.value
    if token.decimals is None:
        return TokenBalance(
            holder=request.holder,
            token=token,
            raw_balance=raw_balance,
            amount=None,
            formatted=None,
            success=True,
            error="decimals unavailable",
            raw=value.raw,
        )

    amount = value.as_amount(token.decimals)
    return TokenBalance(
        holder=request.holder,
        token=token,
        raw_balance=raw_balance,
        amount=amount,
        formatted=amount.format(),
        success=True,
        error=None,
        raw=value.raw,
    )


def execute_batch(
    client: MulticallClient,
    builder: BatchBuilder,
    block_identifier: BlockIdentifier = "latest",
) -> list[DecodedValue]:
    """Build, call and decode.

    :raise EncodingError:
        Bad request, nothing was sent

    :raise NetworkError:
        The batch failed as a whole
    """
    calls = builder.build()
    results = client.call(calls, block_identifier=block_identifier)
    return decode_results(calls, results)


def read_token_info(
    client: MulticallClient,
    tokens: Iterable[HexAddress | str],
    block_identifier: BlockIdentifier = "latest",
) -> dict[str, TokenInfo]:
    """Read name, symbol and decimals for tokens.

    :return:
        Lowercased token address -> info
    """
    builder = BatchBuilder()
    for token in tokens:
        builder.add_token_info(token)
    return collect_token_info(execute_batch(client, builder, block_identifier))


def read_token_balances(
    client: MulticallClient,
    tokens: Iterable[HexAddress | str],
    holders: Iterable[HexAddress | str],
    block_identifier: BlockIdentifier = "latest",
) -> list[TokenBalance]:
    """Read a balance sheet of holders x tokens.

    Token info and all balances go out in one batch.

    :return:
        One row per (holder, token), holders in the outer loop.
    """
    builder = BatchBuilder()
    builder.add_balance_sheet(tokens, holders)
    values = execute_batch(client, builder, block_identifier)

    infos = collect_token_info(values)

    balances = []
    for value in values:
        tag = value.call.tag
        if isinstance(tag.request, BalanceRequest):
            balances.append(create_token_balance(value, infos[tag.request.token.lower()]))

    failed = sum(1 for b in balances if not b.success)
    logger.info("Read %d balances, %d failed", len(balances), failed)
    return balances


def read_contracts(
    client: MulticallClient,
    requests: Iterable[ContractReadRequest],
    block_identifier: BlockIdentifier = "latest",
) -> list[DecodedValue]:
    """Read arbitrary view functions in one batch.

    :return:
        One decoded value per request, in the request order.
        Use ``value.call.tag.request.label`` to find your request.
    """
    builder = BatchBuilder()
    for request in requests:
        assert isinstance(request, ContractReadRequest), f"Got {request}"
        builder.add(request)
    return execute_batch(client, builder, block_identifier)
