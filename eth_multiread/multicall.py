"""Multicall3 aggregator client.

Submit a batch of :py:class:`eth_multiread.batch.CallDescriptor` as one ``tryAggregate`` ``eth_call``
and get raw per-call results back.

- `Multicall3 <https://www.multicall3.com/>`__ is deployed at the same address on most chains

- ``requireSuccess`` is always false, so one reverting call never aborts its siblings

- The JSON-RPC request goes directly to the Web3 provider. We do not go through
  web3.py middleware, so there is no ``eth_chainId`` lookup on each call.

- A batch goes out as one ``eth_call``. If the node limits the call size, set ``batch_size``
  and the batch is split to chunks executed sequentially

Example:

.. code-block:: python

    client = MulticallClient(web3)
    results = client.call(calls)
    assert len(results) == len(calls)
    for call, result in zip(calls, results):
        print(call.function, result.success, result.return_data.hex())

"""

import logging
import time
from dataclasses import dataclass
from http.client import RemoteDisconnected
from itertools import islice
from typing import Callable, Collection, Final, Generator, Iterable

import eth_abi
from eth_abi.exceptions import DecodingError
from eth_typing import BlockIdentifier, HexAddress
from eth_utils import to_checksum_address
from hexbytes import HexBytes
from requests.exceptions import (
    ChunkedEncodingError,
    ConnectionError,
    ContentDecodingError,
    HTTPError,
    RequestException,
    Timeout,
    TooManyRedirects,
)
from web3 import Web3

from eth_multiread.abi import get_abi_by_filename
from eth_multiread.batch import CallDescriptor
from eth_multiread.encoding import FunctionSpec, encode_call
from eth_multiread.exceptions import NetworkError


logger = logging.getLogger(__name__)


#: Default Multicall3 address
MULTICALL_DEPLOY_ADDRESS: Final[str] = "0xcA11bde05977b3631167028862bE2a173976CA11"

#: Per-chain Multicall3 deployments
MULTICALL_CHAIN_ADDRESSES = {
    324: "0xF9cda624FBC7e059355ce98a31693d299FACd963",  # https://zksync.blockscout.com/address/0xF9cda624FBC7e059355ce98a31693d299FACd963
}

#: How many times we try a failing eth_call before giving up
DEFAULT_ATTEMPTS = 3

#: Seconds to sleep between attempts
DEFAULT_RETRY_SLEEP = 5.0

#: Return value of tryAggregate()
TRY_AGGREGATE_RESULT_TYPES = ["(bool,bytes)[]"]

#: Transport exceptions we know we should retry after some timeout
RETRYABLE_EXCEPTIONS = (
    ConnectionError,
    HTTPError,
    Timeout,
    TooManyRedirects,
    # requests.exceptions.ChunkedEncodingError: ("Connection broken: InvalidChunkLength(got length b'', 0 bytes read)", ...)
    ChunkedEncodingError,
    # urllib3.exceptions.ProtocolError: ('Connection aborted.', RemoteDisconnected('Remote end closed connection without response'))
    RemoteDisconnected,
    ContentDecodingError,
)

#: HTTP status codes we know we might want to retry after a timeout
#:
#: Taken from https://stackoverflow.com/a/72302017/315168
RETRYABLE_HTTP_STATUS_CODES = (
    429,
    500,
    502,
    503,
    504,
    520,  # CloudFlare: Unknown error
    525,  # SSL handshake failed
)

#: JSON-RPC error codes of broken or overloaded nodes
#:
#: See GoEthereum error codes https://github.com/ethereum/go-ethereum/blob/master/rpc/errors.go
RETRYABLE_RPC_ERROR_CODES = (
    # {'message': 'Internal JSON-RPC error.', 'code': -32603}
    -32603,
    # {'code': -32043, 'message': 'Requested data is not available'}
    -32043,
    # {'code': -32005, 'message': 'limit exceeded'}
    -32005,
    -32701,
    # dRPC: {'message': 'There are not enough CUPs left to cover the CU required for current request.', 'code': 42903}
    42903,
)

#: Node error messages we retry regardless of the error code
RETRYABLE_RPC_ERROR_MESSAGES = {
    # Load balancer routed us to a node that is behind
    "header not found",
    # {'code': -32000, 'message': 'execution aborted (timeout = 5s)'}
    "execution aborted (timeout = 5s)",
    # dRPC {'message': 'empty reader set', 'code': -32000}
    "empty reader set",
}


@dataclass(frozen=True, slots=True)
class CallResult:
    """Raw result of one call in a batch."""

    #: Did the call revert
    success: bool

    #: Return data, or revert data
    return_data: bytes

    def __repr__(self):
        return f"<CallResult success:{self.success} data:{len(self.return_data)} bytes>"


def is_retryable_rpc_failure(
    exc: Exception,
    retryable_exceptions: tuple = RETRYABLE_EXCEPTIONS,
    retryable_status_codes: Collection[int] = RETRYABLE_HTTP_STATUS_CODES,
    retryable_rpc_error_codes: Collection[int] = RETRYABLE_RPC_ERROR_CODES,
    retryable_rpc_error_messages: Collection[str] = RETRYABLE_RPC_ERROR_MESSAGES,
) -> bool:
    """Check if a failed ``eth_call`` is worth of retrying.

    Retryable reasons are connection timeouts, API throttling and such.

    :param exc:
        Exception raised by :py:mod:`requests`, or :py:class:`ValueError`
        with the JSON-RPC error dict as its argument.
    """

    if isinstance(exc, ValueError):
        # ValueError: {'message': 'Internal JSON-RPC error.', 'code': -32603}
        if len(exc.args) > 0:
            arg = exc.args[0]
            if type(arg) == dict:
                code = arg.get("code")
                message = arg.get("message", "") or ""

                if code in retryable_rpc_error_codes:
                    return True

                for string_check in retryable_rpc_error_messages:
                    # Some RPCs decorate the messages, so no exact match
                    if string_check in message:
                        return True

        return False

    if isinstance(exc, HTTPError):
        if exc.response is None:
            return True
        return exc.response.status_code in retryable_status_codes

    if isinstance(exc, retryable_exceptions):
        return True

    return False


def get_try_aggregate_function() -> FunctionSpec:
    """tryAggregate(bool,(address,bytes)[]) from the bundled IMulticall3 ABI."""
    return FunctionSpec.from_abi(get_abi_by_filename("multicall/IMulticall3.json"), "tryAggregate")


def encode_try_aggregate(calls: list[CallDescriptor]) -> bytes:
    """Encode ``tryAggregate(false, calls)`` payload."""
    encoded_calls = [(c.target, c.calldata) for c in calls]
    data, _ = encode_call(get_try_aggregate_function(), [False, encoded_calls])
    return data


def decode_try_aggregate(data: bytes) -> list[CallResult]:
    """Decode ``(bool success, bytes returnData)[]``.

    :raise NetworkError:
        The reply is not a valid result array
    """
    try:
        (output,) = eth_abi.decode(TRY_AGGREGATE_RESULT_TYPES, data)
    except (DecodingError, OverflowError) as e:
        raise NetworkError(f"Could not decode tryAggregate() reply of {len(data)} bytes: {e}") from e
    return [CallResult(success=success, return_data=bytes(return_data)) for success, return_data in output]


def format_block_identifier(block_identifier: BlockIdentifier) -> str:
    """JSON-RPC block parameter.

    Integers are sent as hex quantities, tags like ``latest`` as is.
    """
    assert type(block_identifier) != bool, f"Got {block_identifier}"
    if type(block_identifier) == int:
        assert block_identifier >= 0, f"Bad block number {block_identifier}"
        return hex(block_identifier)
    if isinstance(block_identifier, bytes):
        return HexBytes(block_identifier).to_0x_hex()
    return block_identifier


def _batcher(iterable: Iterable, batch_size: int) -> Generator:
    """Batch data into lists of batch_size length. The last batch may be shorter.

    https://stackoverflow.com/a/8290514/2527433
    """
    iterator = iter(iterable)
    while batch := list(islice(iterator, batch_size)):
        yield batch


class MulticallClient:
    """Execute call batches through Multicall3 on one chain.

    - Thread safe as long as the underlying provider is; independent batches
      for different chains can be dispatched from a thread pool

    - No chain id lookup happens unless :py:meth:`get_chain_id` is called
    """

    def __init__(
        self,
        web3: Web3,
        address: HexAddress | str | None = None,
        chain_id: int | None = None,
        batch_size: int | None = None,
        attempts: int = DEFAULT_ATTEMPTS,
        retry_sleep: float = DEFAULT_RETRY_SLEEP,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        :param web3:
            Web3 connection. Only its provider is used.

        :param address:
            Multicall3 address override.
            If not given, use per-chain address if ``chain_id`` is given, otherwise the well-known default address.

        :param chain_id:
            Chain id if known, avoids a lookup in :py:meth:`get_chain_id`.

        :param batch_size:
            Max calls per one ``eth_call``.
            Default ``None`` sends every batch as a single ``eth_call``, whatever its size.

        :param attempts:
            How many times to try a retryable failure.

        :param sleep:
            Sleep function, for testing.
        """
        assert batch_size is None or batch_size > 0, f"Bad batch size {batch_size}"
        assert attempts >= 1, f"Bad attempts {attempts}"

        self.web3 = web3
        self.chain_id = chain_id

        if address is None:
            address = MULTICALL_CHAIN_ADDRESSES.get(chain_id, MULTICALL_DEPLOY_ADDRESS)

        self.address = to_checksum_address(address)
        self.batch_size = batch_size
        self.attempts = attempts
        self.retry_sleep = retry_sleep
        self.sleep = sleep

    def __repr__(self):
        return f"<MulticallClient {self.address} chain:{self.chain_id} batch size:{self.batch_size}>"

    def get_chain_id(self) -> int:
        """Ask the chain id from the node once and cache it.

        Only needed for logging and per-chain lookups.
        """
        if self.chain_id is None:
            response = self.web3.provider.make_request("eth_chainId", [])
            if "error" in response:
                raise NetworkError(f"eth_chainId failed: {response['error']}")
            self.chain_id = int(response["result"], 16)
        return self.chain_id

    def call(
        self,
        calls: list[CallDescriptor],
        block_identifier: BlockIdentifier = "latest",
    ) -> list[CallResult]:
        """Execute calls and return one result per call, in the same order.

        :param calls:
            Calls to perform.

        :param block_identifier:
            Block number or a tag like ``latest``.

        :return:
            List of results. ``result[i]`` is the result of ``calls[i]``.

        :raise NetworkError:
            Transport failure after retries, JSON-RPC error or malformed reply.
            The whole batch is lost.
        """
        assert all(isinstance(c, CallDescriptor) for c in calls), f"Got: {calls}"

        if not calls:
            return []

        block = format_block_identifier(block_identifier)

        if self.batch_size is None:
            return self._call_chunk(calls, block)

        results = []
        chunk_count = (len(calls) + self.batch_size - 1) // self.batch_size
        for idx, chunk in enumerate(_batcher(calls, self.batch_size), start=1):
            if chunk_count > 1:
                logger.info("Processing multicall chunk #%d/%d, chunk size %d", idx, chunk_count, len(chunk))
            results += self._call_chunk(chunk, block)

        assert len(results) == len(calls)
        return results

    def _call_chunk(self, calls: list[CallDescriptor], block: str) -> list[CallResult]:
        payload = encode_try_aggregate(calls)
        payload_size = sum(20 + len(c.calldata) for c in calls)

        started = time.perf_counter()

        logger.info(
            "Performing multicall, input payload total size %d bytes on %d functions, block is %s",
            payload_size,
            len(calls),
            block,
        )

        raw = self._eth_call(payload, block)
        results = decode_try_aggregate(raw)

        if len(results) != len(calls):
            raise NetworkError(f"Multicall returned {len(results)} results for {len(calls)} calls")

        out_size = sum(len(r.return_data) for r in results)
        duration = time.perf_counter() - started
        logger.info("Multicall result fetch and handling took %f seconds, output was %d bytes", duration, out_size)
        return results

    def _eth_call(self, payload: bytes, block: str) -> bytes:
        """Do the raw eth_call with retries."""
        params = [
            {
                "to": self.address,
                "data": HexBytes(payload).to_0x_hex(),
            },
            block,
        ]

        for attempt in range(1, self.attempts + 1):
            try:
                response = self.web3.provider.make_request("eth_call", params)
                if "error" in response:
                    # Same shape as web3.py raises
                    raise ValueError(response["error"])
                result = response.get("result")
                if type(result) != str:
                    raise NetworkError(f"eth_call reply has no result: {response}")
                return bytes(HexBytes(result))
            except (RequestException, OSError, ValueError) as e:
                if attempt < self.attempts and is_retryable_rpc_failure(e):
                    logger.warning(
                        "Multicall eth_call failed with %s, attempt %d/%d, sleeping %f seconds before retry",
                        e,
                        attempt,
                        self.attempts,
                        self.retry_sleep,
                    )
                    self.sleep(self.retry_sleep)
                    continue
                raise NetworkError(f"Multicall eth_call to {self.address} failed after {attempt} attempts: {e}") from e

        raise AssertionError("Unreachable")
