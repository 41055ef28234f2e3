"""Shared fixtures.

No test needs network access: the node is :py:class:`fake_node.FakeMulticallProvider`.
"""

import pytest
from web3 import Web3

from eth_multiread.multicall import MulticallClient

from fake_node import FakeMulticallProvider


@pytest.fixture()
def fake_provider() -> FakeMulticallProvider:
    return FakeMulticallProvider(chain_id=1)


@pytest.fixture()
def web3(fake_provider) -> Web3:
    return Web3(fake_provider)


@pytest.fixture()
def sleeps() -> list[float]:
    """Collect sleep calls instead of sleeping."""
    return []


@pytest.fixture()
def multicall_client(web3, sleeps) -> MulticallClient:
    return MulticallClient(web3, sleep=sleeps.append)
