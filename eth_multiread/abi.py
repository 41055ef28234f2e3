"""ABI loading from the bundled JSON files.

Provides functions to load ABI files shipped with the package and look up function entries.
The results are cached for the speedup.

ABI files live in the ``eth_multiread/abi`` folder.
"""

import json
from functools import lru_cache
from pathlib import Path

from eth_utils.abi import collapse_if_tuple

# How big are our ABI caches
_CACHE_SIZE = 64


@lru_cache(maxsize=_CACHE_SIZE)
def get_abi_by_filename(fname: str) -> dict:
    """Reads a embedded ABI file and returns it.

    Example::

        abi = get_abi_by_filename("ERC20.json")

    Loaded ABI files are cache in in-process memory to speed up future loading.

    :param fname:
        Path relative to the bundled ``abi`` folder, e.g. ``multicall/IMulticall3.json``.

    :return:
        Full contract interface. The function list is under the key ``abi``.
    """

    here = Path(__file__).resolve().parent
    abi_path = here / "abi" / Path(fname)
    with open(abi_path, "rt", encoding="utf-8") as f:
        abi = json.load(f)
    return abi


def get_abi_entries(abi: dict | list) -> list[dict]:
    """Accept both compiler artifacts and Etherscan copy-pasted ABI lists."""
    if type(abi) == list:
        # Etherscan
        return abi
    return abi["abi"]


def get_function_abi(abi: dict | list, name: str) -> dict | None:
    """Find a function entry by its name.

    Does not support overloaded Solidity functions.
    On multiple functions with the same name, use one first declared in ABI.

    :return:
        ABI function entry or ``None`` if not found
    """
    return next((a for a in get_abi_entries(abi) if a.get("type", "function") == "function" and a.get("name") == name), None)


def get_abi_types(params: list[dict]) -> tuple[str, ...]:
    """Convert ABI ``inputs`` or ``outputs`` to canonical type strings.

    Tuples are collapsed, so ``struct Call[]`` becomes ``(address,bytes)[]``.
    """
    return tuple(collapse_if_tuple(p) for p in params)
