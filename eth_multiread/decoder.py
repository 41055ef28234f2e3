"""Decode multicall results.

Each raw :py:class:`eth_multiread.multicall.CallResult` is paired by position
with the :py:class:`eth_multiread.batch.CallDescriptor` it came from and decoded using
its output types.

Per-call failures never raise. They become :py:class:`DecodedValue` entries with ``success=False``
and a human readable ``reason``:

- ``call reverted``

- ``no data returned`` - e.g. a call to an address without code

- ``decode error: ...`` - the returned bytes do not match the output types
"""

import logging
from dataclasses import dataclass
from typing import Any

import eth_abi
from eth_abi.exceptions import DecodingError

from eth_multiread.amount import Amount
from eth_multiread.batch import CallDescriptor
from eth_multiread.exceptions import NetworkError
from eth_multiread.multicall import CallResult


logger = logging.getLogger(__name__)


#: Reason for a call that reverted
REASON_REVERTED = "call reverted"

#: Reason for a succesful call with empty return data
REASON_NO_DATA = "no data returned"


@dataclass(frozen=True, slots=True)
class DecodedValue:
    """Decoded result of one call.

    Either a decoded value, or a failed placeholder holding the raw bytes.
    Failed values are never coerced to defaults.
    """

    #: The call this value is for
    call: CallDescriptor

    #: Did the call succeed and decode
    success: bool

    #: Scalar for single return value functions, tuple for multiple.
    #: ``None`` on failure.
    value: Any

    #: Original return data
    raw: bytes

    #: Why this call failed
    reason: str | None = None

    def __repr__(self):
        if self.success:
            return f"<DecodedValue {self.call.function} {self.value!r}>"
        return f"<DecodedValue {self.call.function} failed: {self.reason}>"

    def as_amount(self, scale: int) -> Amount:
        """Interpret the decoded value as a raw token amount.

        :raise ValueError:
            The call failed or the value is not an unsigned integer
        """
        if not self.success:
            raise ValueError(f"Cannot convert failed call {self.call.function} to amount: {self.reason}")
        return Amount.from_value(self.value, scale)


def decode_output(output_types: tuple[str, ...], data: bytes) -> Any:
    """Decode return data.

    :return:
        Scalar if there is one output type, tuple otherwise.
    """
    decoded = eth_abi.decode(list(output_types), data)
    if len(output_types) == 1:
        return decoded[0]
    return tuple(decoded)


def decode_result(call: CallDescriptor, result: CallResult) -> DecodedValue:
    """Decode a single call result. Never raises on bad data."""
    raw = result.return_data

    if not result.success:
        return DecodedValue(call=call, success=False, value=None, raw=raw, reason=REASON_REVERTED)

    if len(raw) == 0 and len(call.output_types) > 0:
        return DecodedValue(call=call, success=False, value=None, raw=raw, reason=REASON_NO_DATA)

    try:
        value = decode_output(call.output_types, raw)
    except (DecodingError, ValueError, OverflowError) as e:
        logger.debug("Could not decode %s output %s: %s", call, raw.hex(), e)
        return DecodedValue(call=call, success=False, value=None, raw=raw, reason=f"decode error: {e}")

    return DecodedValue(call=call, success=True, value=value, raw=raw)


def decode_results(calls: list[CallDescriptor], results: list[CallResult]) -> list[DecodedValue]:
    """Decode a whole batch result.

    :raise NetworkError:
        Result count does not match the call count
    """
    if len(calls) != len(results):
        raise NetworkError(f"Got {len(results)} results for {len(calls)} calls")
    return [decode_result(call, result) for call, result in zip(calls, results)]
