"""Balance sheet reads end-to-end through the fake node."""

import pytest

from eth_multiread.balances import read_contracts, read_token_balances, read_token_info
from eth_multiread.batch import ContractReadRequest
from eth_multiread.encoding import FunctionSpec
from eth_multiread.multicall import MulticallClient

from fake_node import FakeERC20, garbage_contract


USDC = "0x1111111111111111111111111111111111111111"
WETH = "0x2222222222222222222222222222222222222222"
MKR = "0x3333333333333333333333333333333333333333"
BROKEN = "0x4444444444444444444444444444444444444444"
ALICE = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
BOB = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"


@pytest.fixture()
def tokens(fake_provider):
    fake_provider.deploy(
        USDC,
        FakeERC20(
            "USD Coin",
            "USDC",
            6,
            balances={ALICE: 1_500_000, BOB: 123},
            reverting_holders={BOB},
        ),
    )
    fake_provider.deploy(
        WETH,
        FakeERC20(
            "Wrapped Ether",
            "WETH",
            18,
            balances={ALICE: 10**18, BOB: 2 * 10**17 + 5},
        ),
    )
    fake_provider.deploy(MKR, FakeERC20("Maker", "MKR", 18, balances={ALICE: 10**18}, bytes32_strings=True))
    fake_provider.deploy(BROKEN, FakeERC20(None, "BRK", None, balances={ALICE: 42}))


def test_two_tokens_two_holders(multicall_client, fake_provider, tokens):
    """2 tokens x 2 holders with one reverting balanceOf.

    - 6 info calls + 4 balance calls in one eth_call
    - 3 balances formatted with their token decimals
    - 1 balance flagged failed with its raw revert data
    """
    balances = read_token_balances(multicall_client, [USDC, WETH], [ALICE, BOB])

    assert fake_provider.calls_per_request == [10]
    assert fake_provider.request_counts["eth_call"] == 1

    assert [(b.holder, b.token.symbol) for b in balances] == [
        (ALICE, "USDC"),
        (ALICE, "WETH"),
        (BOB, "USDC"),
        (BOB, "WETH"),
    ]

    alice_usdc, alice_weth, bob_usdc, bob_weth = balances

    assert alice_usdc.success
    assert alice_usdc.formatted == "1.5"
    assert alice_usdc.raw_balance == 1_500_000
    assert alice_weth.formatted == "1"
    assert bob_weth.formatted == "0.200000000000000005"
    assert bob_weth.amount.scale == 18

    assert not bob_usdc.success
    assert bob_usdc.formatted is None
    assert bob_usdc.amount is None
    assert bob_usdc.error == "call reverted"
    assert b"balanceOf blocked" in bob_usdc.raw

    assert sum(1 for b in balances if b.success) == 3


def test_token_info(multicall_client, tokens):
    """Token info decodes strings, bytes32 strings and partial failures."""
    infos = read_token_info(multicall_client, [USDC, MKR, BROKEN])

    usdc = infos[USDC]
    assert (usdc.name, usdc.symbol, usdc.decimals) == ("USD Coin", "USDC", 6)
    assert usdc.is_complete()

    mkr = infos[MKR]
    assert (mkr.name, mkr.symbol, mkr.decimals) == ("Maker", "MKR", 18)

    broken = infos[BROKEN]
    assert broken.name is None
    assert broken.symbol == "BRK"
    assert broken.decimals is None
    assert broken.failures == {"name": "call reverted", "decimals": "call reverted"}
    assert not broken.is_complete()


def test_balance_without_decimals(multicall_client, tokens):
    """Raw balance is kept when the token does not tell its decimals."""
    (balance,) = read_token_balances(multicall_client, [BROKEN], [ALICE])
    assert balance.success
    assert balance.raw_balance == 42
    assert balance.amount is None
    assert balance.error == "decimals unavailable"


def test_not_a_contract(multicall_client):
    """Address without code gives no data for every field."""
    nobody = "0x5555555555555555555555555555555555555555"
    (balance,) = read_token_balances(multicall_client, [nobody], [ALICE])
    assert not balance.success
    assert balance.error == "no data returned"
    assert balance.token.failures["symbol"] == "no data returned"


def test_balance_sheet_chunked(web3, fake_provider, tokens):
    """Small batch size splits the sheet but keeps the row order."""
    client = MulticallClient(web3, batch_size=4)
    balances = read_token_balances(client, [USDC, WETH, MKR], [ALICE, BOB])
    assert fake_provider.calls_per_request == [4, 4, 4, 3]
    assert [b.formatted for b in balances] == ["1.5", "1", "1", None, "0.200000000000000005", "0"]


def test_large_balance_sheet_one_eth_call(multicall_client, fake_provider):
    """5 tokens x 8 holders is 55 calls and still goes out as one eth_call."""
    token_addresses = [f"0x{i:040x}" for i in range(0x100, 0x105)]
    holders = [f"0x{i:040x}" for i in range(0x200, 0x208)]
    for i, address in enumerate(token_addresses):
        fake_provider.deploy(address, FakeERC20(f"Token {i}", f"TKN{i}", 18, balances={h: 10**18 for h in holders}))

    balances = read_token_balances(multicall_client, token_addresses, holders)

    assert fake_provider.request_counts["eth_call"] == 1
    assert fake_provider.calls_per_request == [55]
    assert len(balances) == 40
    assert all(b.formatted == "1" for b in balances)


def test_read_contracts(multicall_client, fake_provider, tokens):
    """Generic reads return decoded values in request order."""
    fake_provider.deploy(BROKEN, garbage_contract)
    decimals = FunctionSpec.from_signature("decimals()", ["uint8"])
    balance_of = FunctionSpec.from_signature("balanceOf(address)", ["uint256"])

    values = read_contracts(
        multicall_client,
        [
            ContractReadRequest(WETH, decimals, label="weth-decimals"),
            ContractReadRequest(USDC, balance_of, (ALICE,), label="alice-usdc"),
            ContractReadRequest(BROKEN, decimals, label="garbage"),
        ],
    )

    assert [v.call.tag.request.label for v in values] == ["weth-decimals", "alice-usdc", "garbage"]
    assert values[0].value == 18
    assert values[1].value == 1_500_000
    assert not values[2].success
    assert values[2].reason.startswith("decode error")
