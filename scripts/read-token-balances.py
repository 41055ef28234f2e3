#!/usr/bin/env python
"""Read ERC-20 balances of several wallets with one multicall and enrich them with CoinGecko data.

Usage:

.. code-block:: shell

    export JSON_RPC_URL=https://eth.llamarpc.com
    export TOKENS=0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48,0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2
    export HOLDERS=0x28C6c06298d514Db089934071355E5743bf21d60
    export CHAIN_ID=1
    python scripts/read-token-balances.py

Environment variables:
    JSON_RPC_URL: Node to read from
    TOKENS: Comma separated token addresses
    HOLDERS: Comma separated wallet addresses
    CHAIN_ID: Chain id for CoinGecko lookups (optional, no enrichment if not set)
    BLOCK_NUMBER: Historical block to read at (optional)
    COINGECKO_API_KEY: CoinGecko API key (optional)
    LOG_LEVEL: Python logging level (optional)
"""

import os

from tabulate import tabulate

from eth_multiread.balances import read_token_balances
from eth_multiread.chain import get_chain_name
from eth_multiread.config import MultireadConfig, create_web3
from eth_multiread.utils import setup_console_logging


def parse_address_list(value: str) -> list[str]:
    return [a.strip() for a in value.split(",") if a.strip()]


def main():
    setup_console_logging(default_log_level="info")

    config = MultireadConfig.from_env()

    tokens = parse_address_list(os.environ["TOKENS"])
    holders = parse_address_list(os.environ["HOLDERS"])
    chain_id = int(os.environ["CHAIN_ID"]) if os.environ.get("CHAIN_ID") else None
    block_identifier = int(os.environ["BLOCK_NUMBER"]) if os.environ.get("BLOCK_NUMBER") else "latest"

    web3 = create_web3(os.environ["JSON_RPC_URL"], timeout=config.http_timeout)
    client = config.create_multicall_client(web3, chain_id=chain_id)

    balances = read_token_balances(client, tokens, holders, block_identifier=block_identifier)

    rows = []
    for b in balances:
        rows.append(
            [
                b.holder,
                b.token.symbol or "?",
                b.formatted if b.formatted is not None else "-",
                "" if b.error is None else b.error,
            ]
        )

    print(f"Read {len(balances)} balances at block {block_identifier} through multicall {client.address}")
    print(tabulate(rows, headers=["Holder", "Token", "Balance", "Error"], tablefmt="grid"))

    if chain_id is None:
        return

    print(f"\nFetching CoinGecko data for {len(tokens)} tokens on {get_chain_name(chain_id)}")

    queue = config.create_metadata_queue()
    try:
        metadata = queue.fetch_many([(t, chain_id) for t in tokens], timeout=600)
    finally:
        queue.close()

    rows = []
    for token in tokens:
        meta = metadata[token.lower()]
        if meta is None:
            rows.append([token, "-", "-", "-"])
        else:
            rows.append([token, meta.name, meta.symbol.upper(), meta.price_usd if meta.price_usd is not None else "-"])

    print(tabulate(rows, headers=["Token", "Name", "Symbol", "USD price"], tablefmt="grid"))


if __name__ == "__main__":
    main()
