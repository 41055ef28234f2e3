"""Exceptions raised by the batched reader and metadata enrichment.

Per-call failures inside a multicall batch are *not* exceptions:
they are returned as failed :py:class:`eth_multiread.decoder.DecodedValue` entries.
Only failures that make the whole batch unusable are raised.
"""


class EncodingError(Exception):
    """Could not encode a contract call.

    - Address argument is not a valid address

    - Argument value does not fit the declared Solidity type

    - Wrong number of arguments, or the method is not in the ABI

    This is always a caller error and the batch is never built.
    """


class NetworkError(Exception):
    """Multicall batch failed as a whole.

    - Transport failure after retries

    - JSON-RPC error reply

    - Malformed reply, e.g. result array length does not match the call count

    It is safe to retry the whole batch.
    """


class RateLimited(Exception):
    """Metadata API replied with HTTP 429 Too Many Requests.

    Handled inside :py:class:`eth_multiread.metadata.queue.MetadataQueue`
    and never surfaced to the caller.
    """

    def __init__(self, msg: str, retry_after: float | None = None):
        super().__init__(msg)
        #: Value of ``Retry-After`` header in seconds, if the server gave one
        self.retry_after = retry_after


class MetadataFetchError(Exception):
    """Metadata API gave a reply we cannot use.

    - Has attribute `status_code`, `None` if the body could not be parsed
    """

    def __init__(self, msg: str, status_code: int | None, address: str):
        super().__init__(msg)
        self.status_code = status_code
        self.address = address
