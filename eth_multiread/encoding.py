"""Contract call encoding.

Turn a (contract, method, arguments) triple to raw calldata
and the list of output types needed to decode the result later.

- No network access

- ABI is read from the bundled JSON files or given by the caller,
  see :py:mod:`eth_multiread.abi`

Example:

.. code-block:: python

    balance_of = FunctionSpec.from_abi(get_abi_by_filename("ERC20.json"), "balanceOf")
    calldata, output_types = encode_call(balance_of, [holder])
    assert calldata[0:4].hex() == "70a08231"
    assert output_types == ("uint256",)

"""

from dataclasses import dataclass
from typing import Any, Sequence

import eth_abi
from eth_abi.exceptions import ABITypeError, ParseError
from eth_abi.exceptions import EncodingError as ABIEncodingError
from eth_utils import function_signature_to_4byte_selector, is_checksum_address, is_checksum_formatted_address, is_hex_address

from eth_multiread.abi import get_abi_types, get_function_abi
from eth_multiread.exceptions import EncodingError


@dataclass(frozen=True, slots=True)
class FunctionSpec:
    """Solidity function signature and its return types."""

    #: Function name e.g. ``balanceOf``
    name: str

    #: Canonical input types e.g. ``("address",)``
    input_types: tuple[str, ...]

    #: Canonical output types e.g. ``("uint256",)``
    output_types: tuple[str, ...]

    def __repr__(self):
        return f"<Function {self.signature} returns ({','.join(self.output_types)})>"

    @property
    def signature(self) -> str:
        """Selector source text, e.g. ``balanceOf(address)``."""
        return f"{self.name}({','.join(self.input_types)})"

    def get_selector(self) -> bytes:
        """First 4 bytes of keccak of the signature."""
        return function_signature_to_4byte_selector(self.signature)

    @staticmethod
    def from_abi(abi: dict | list, name: str) -> "FunctionSpec":
        """Create a function spec from an ABI file entry.

        :param abi:
            Loaded ABI, see :py:func:`eth_multiread.abi.get_abi_by_filename`

        :raise EncodingError:
            The function is not in the ABI
        """
        fn_abi = get_function_abi(abi, name)
        if fn_abi is None:
            raise EncodingError(f"Function {name} not found in ABI")
        return FunctionSpec(
            name=name,
            input_types=get_abi_types(fn_abi.get("inputs", [])),
            output_types=get_abi_types(fn_abi.get("outputs", [])),
        )

    @staticmethod
    def from_signature(signature: str, output_types: Sequence[str] = ()) -> "FunctionSpec":
        """Create a function spec from a human written signature.

        Mimics Solidity's ``abi.encodeWithSignature()`` input.
        Tuple arguments are not supported here, use :py:meth:`from_abi` for them.

        Example:

        .. code-block:: python

            spec = FunctionSpec.from_signature("allowance(address,address)", ["uint256"])

        """
        assert type(signature) == str, f"Got {signature}"
        open_idx = signature.find("(")
        if open_idx <= 0 or not signature.endswith(")"):
            raise EncodingError(f"Bad function signature: {signature}")
        name = signature[0:open_idx]
        args_text = signature[open_idx + 1 : -1].replace(" ", "")
        if "(" in args_text:
            raise EncodingError(f"Tuple arguments not supported in signature: {signature}")
        input_types = tuple(args_text.split(",")) if args_text else ()
        return FunctionSpec(
            name=name,
            input_types=input_types,
            output_types=tuple(output_types),
        )


def is_valid_address(value) -> bool:
    """Check for a 0x prefixed 20 byte hex address.

    Mixed case addresses must have a valid EIP-55 checksum.
    All lowercase or all uppercase addresses are accepted as is.
    """
    if type(value) != str or not value.startswith("0x") or not is_hex_address(value):
        return False
    if is_checksum_formatted_address(value):
        return is_checksum_address(value)
    return True


def _validate_address_args(func: FunctionSpec, args: Sequence[Any]):
    """Give a human readable error before eth_abi gives a cryptic one."""
    for idx, (type_str, value) in enumerate(zip(func.input_types, args)):
        if type_str == "address":
            if not is_valid_address(value):
                raise EncodingError(f"Argument #{idx} of {func.signature} is not a valid address: {value!r}")


def encode_function_args(func: FunctionSpec, args: Sequence[Any]) -> bytes:
    """Encode function arguments without the selector.

    :raise EncodingError:
        Bad address, value out of the type range or wrong argument count
    """
    args = list(args)

    if len(args) != len(func.input_types):
        raise EncodingError(f"{func.signature} takes {len(func.input_types)} arguments, got {len(args)}: {args}")

    _validate_address_args(func, args)

    try:
        return eth_abi.encode(list(func.input_types), args)
    except (ABIEncodingError, ABITypeError, ParseError) as e:
        raise EncodingError(f"Cannot encode {func.signature} with args {args}: {e}") from e


def encode_call(func: FunctionSpec, args: Sequence[Any] = ()) -> tuple[bytes, tuple[str, ...]]:
    """Encode function selector + its arguments as data payload.

    :param func:
        Function which arguments we are going to encode.

    :param args:
        Argument values to be encoded.

    :return:
        Tuple (calldata, output types).

        Calldata is Solidity's function selector + argument payload.
        Output types are needed to decode the raw return value.

    :raise EncodingError:
        If the arguments cannot be encoded
    """
    data = func.get_selector() + encode_function_args(func, args)
    return data, func.output_types
