"""Chain id tables."""

from typing import Optional


#: Chain id -> human readable name.
#:
#: Also used to map ``JSON_RPC_{name.upper()}`` environment variables,
#: see :py:mod:`eth_multiread.config`.
CHAIN_NAMES = {
    1: "Ethereum",
    10: "Optimism",
    56: "Binance",
    100: "Gnosis",
    137: "Polygon",
    250: "Fantom",
    324: "ZKsync",
    369: "PulseChain",
    8453: "Base",
    42161: "Arbitrum",
    43114: "Avalanche",
}


def get_chain_name(chain_id: int) -> str:
    """Translate Ethereum chain id to its name."""
    name = CHAIN_NAMES.get(chain_id)
    if name:
        return name

    return f"<Unknown chain, id {chain_id}>"


def get_chain_id_by_name(name: str) -> Optional[int]:
    """Get chain id by its name, case-insensitive.

    :return:
        Chain id or ``None`` if we do not know the chain
    """
    name = name.strip().lower()
    for chain_id, chain_name in CHAIN_NAMES.items():
        if chain_name.lower() == name:
            return chain_id
    return None
