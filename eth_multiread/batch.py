"""Build multicall batches from logical read requests.

- Each call in the batch is represented by one :py:class:`CallDescriptor`

- Descriptors carry a :py:class:`CallTag` so results can be routed back to the
  logical request after the batch round trip, where only the position of the result is known

- ERC-20 info lookups are deduplicated within a batch

Example:

.. code-block:: python

    builder = BatchBuilder()
    builder.add_balance_sheet(tokens=[usdc, weth], holders=[alice, bob])
    calls = builder.build()
    # 2 x 3 info calls + 2 x 2 balanceOf calls
    assert len(calls) == 10

"""

import logging
from dataclasses import dataclass
from typing import Any, Hashable, Iterable, Sequence, TypeAlias

from eth_typing import HexAddress

from eth_multiread.abi import get_abi_by_filename
from eth_multiread.encoding import FunctionSpec, encode_call, is_valid_address
from eth_multiread.exceptions import EncodingError


logger = logging.getLogger(__name__)


#: ERC-20 fields read for a token info request, in this order
TOKEN_INFO_FIELDS = ("name", "symbol", "decimals")


def get_erc20_function(name: str) -> FunctionSpec:
    """Get ERC-20 function spec from the bundled ABI."""
    return FunctionSpec.from_abi(get_abi_by_filename("ERC20.json"), name)


def validate_address(address: str, what="address") -> str:
    """Check a contract or holder address.

    :raise EncodingError:
        Not a valid 0x address. Mixed case addresses must have a valid checksum.
    """
    if not is_valid_address(address):
        raise EncodingError(f"Bad {what}: {address!r}")
    return address


@dataclass(frozen=True, slots=True)
class TokenInfoRequest:
    """Read name, symbol and decimals of an ERC-20 token."""

    token: HexAddress | str


@dataclass(frozen=True, slots=True)
class BalanceRequest:
    """Read ERC-20 balanceOf(holder)."""

    token: HexAddress | str
    holder: HexAddress | str


@dataclass(frozen=True, slots=True)
class ContractReadRequest:
    """Read any view function of any contract."""

    target: HexAddress | str
    function: FunctionSpec
    args: tuple = ()

    #: Caller given identifier to find the result
    label: Hashable | None = None


#: Any logical request the builder understands
ReadRequest: TypeAlias = TokenInfoRequest | BalanceRequest | ContractReadRequest


@dataclass(frozen=True, slots=True)
class CallTag:
    """Route a call result back to its logical request."""

    #: The request this call was created for
    request: ReadRequest

    #: For token info requests, which field this call reads
    field: str | None = None


@dataclass(frozen=True, slots=True)
class CallDescriptor:
    """One call in a multicall batch.

    - Only carry encoded data and output types, not full ABI

    - Immutable after built
    """

    #: Contract address
    target: HexAddress | str

    #: Selector + ABI-encoded arguments
    calldata: bytes

    #: Solidity types used to decode the return data
    output_types: tuple[str, ...]

    #: Back-reference to the logical request
    tag: Any = None

    #: Function name for logging
    function: str = ""

    def __repr__(self):
        return f"<Call {self.function} on {self.target}, data {len(self.calldata)} bytes, tag {self.tag}>"

    @staticmethod
    def create(
        target: HexAddress | str,
        func: FunctionSpec,
        args: Sequence = (),
        tag: Any = None,
    ) -> "CallDescriptor":
        """Encode a call.

        :raise EncodingError:
            Bad target address or arguments
        """
        validate_address(target, "call target")
        calldata, output_types = encode_call(func, args)
        return CallDescriptor(
            target=target,
            calldata=calldata,
            output_types=output_types,
            tag=tag,
            function=func.name,
        )

    def get_debug_info(self) -> str:
        """Get human-readable details for debugging.

        - Punch into Tenderly simulator

        - Data contains both function signature and data payload
        """
        return f"""Address: {self.target}\nData: {self.calldata.hex()}"""

    def get_curl_info(self, block_identifier: int | str = "latest") -> str:
        """Get a copy-pasteable curl command doing this call directly, without multicall."""
        if type(block_identifier) == int:
            block_identifier = hex(block_identifier)
        debug_template = f"""curl -X POST -H "Content-Type: application/json" \\
        --data '{{
          "jsonrpc": "2.0",
          "method": "eth_call",
          "params": [
            {{
              "to": "{self.target}",
              "data": "0x{self.calldata.hex()}"
            }},
            "{block_identifier}"
          ],
          "id": 1
        }}' \\
        $JSON_RPC_URL"""
        return debug_template


def create_token_info_calls(token: HexAddress | str, request: TokenInfoRequest | None = None) -> list[CallDescriptor]:
    """Create name(), symbol() and decimals() calls for a token."""
    if request is None:
        request = TokenInfoRequest(token)
    return [CallDescriptor.create(token, get_erc20_function(field), tag=CallTag(request, field)) for field in TOKEN_INFO_FIELDS]


def create_balance_call(token: HexAddress | str, holder: HexAddress | str, request: BalanceRequest | None = None) -> CallDescriptor:
    """Create balanceOf(holder) call."""
    if request is None:
        request = BalanceRequest(token, holder)
    return CallDescriptor.create(
        token,
        get_erc20_function("balanceOf"),
        [holder],
        tag=CallTag(request),
    )


class BatchBuilder:
    """Collect logical read requests and turn them into an ordered call list.

    Output order:

    - All token info calls first, three per distinct token, tokens in first-seen order

    - Then balance and contract read calls in the order they were added
    """

    def __init__(self):
        #: Lowercased address -> request, first seen wins
        self.token_info_requests: dict[str, TokenInfoRequest] = {}

        #: Non-info requests in insertion order
        self.requests: list[BalanceRequest | ContractReadRequest] = []

    def __repr__(self):
        return f"<BatchBuilder {len(self.token_info_requests)} tokens, {len(self.requests)} other requests>"

    def __len__(self):
        """How many calls :py:meth:`build` will produce."""
        return len(self.token_info_requests) * len(TOKEN_INFO_FIELDS) + len(self.requests)

    def add(self, request: ReadRequest):
        """Add any logical request."""
        if isinstance(request, TokenInfoRequest):
            self.add_token_info(request.token)
        elif isinstance(request, (BalanceRequest, ContractReadRequest)):
            self.requests.append(request)
        else:
            raise AssertionError(f"Unknown request: {request}")

    def add_token_info(self, token: HexAddress | str) -> TokenInfoRequest:
        """Add token info lookup, unless the token is already in the batch."""
        validate_address(token, "token address")
        key = token.lower()
        if key not in self.token_info_requests:
            self.token_info_requests[key] = TokenInfoRequest(token)
        return self.token_info_requests[key]

    def add_balance(self, token: HexAddress | str, holder: HexAddress | str) -> BalanceRequest:
        request = BalanceRequest(token, holder)
        self.requests.append(request)
        return request

    def add_read(
        self,
        target: HexAddress | str,
        function: FunctionSpec,
        args: Sequence = (),
        label: Hashable | None = None,
    ) -> ContractReadRequest:
        request = ContractReadRequest(target, function, tuple(args), label)
        self.requests.append(request)
        return request

    def add_balance_sheet(self, tokens: Iterable[HexAddress | str], holders: Iterable[HexAddress | str]):
        """Read info for every token and balance for every holder x token pair.

        Holders are the outer loop, like in a per-wallet balance table.
        """
        tokens = list(tokens)
        holders = list(holders)
        for token in tokens:
            self.add_token_info(token)
        for holder in holders:
            for token in tokens:
                self.add_balance(token, holder)

    def build(self) -> list[CallDescriptor]:
        """Encode all requests.

        :raise EncodingError:
            Any request had a bad address or argument.
            Nothing is returned in this case.
        """
        calls = []

        for request in self.token_info_requests.values():
            calls += create_token_info_calls(request.token, request)

        for request in self.requests:
            match request:
                case BalanceRequest():
                    calls.append(create_balance_call(request.token, request.holder, request))
                case ContractReadRequest():
                    calls.append(CallDescriptor.create(request.target, request.function, request.args, tag=CallTag(request)))

        logger.debug("Built batch of %d calls for %d tokens", len(calls), len(self.token_info_requests))
        return calls
