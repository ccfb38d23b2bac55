"""Tests for MulticallClient."""

from unittest.mock import AsyncMock

import pytest
from eth_abi import decode, encode

from services.balances.multicall_client import (
    AGGREGATE3_SELECTOR,
    BALANCE_OF_SELECTOR,
    MULTICALL3_ADDRESS,
    MulticallClient,
    MulticallError,
)
from services.chains import NATIVE_TOKEN_ADDRESS, Chain, get_chain_config
from services.errors import ProviderUnavailableError

WALLET = "0x742d35Cc6634C0532925a3b844Bc9e7595f0bEb1"
USDC = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"
DAI = "0x6B175474E89094C44Da98b954EedeAC495271d0F"


def aggregate_result(entries):
    """Build an aggregate3 return value from ``(success, return_data)`` pairs."""
    return "0x" + encode(["(bool,bytes)[]"], [entries]).hex()


def uint(value):
    return encode(["uint256"], [value])


@pytest.fixture
def multicall_client():
    """Create a MulticallClient instance for testing."""
    return MulticallClient(alchemy_api_key="test_key")


class TestMulticallClient:
    """Test suite for MulticallClient."""

    def test_encode_balance_call(self, multicall_client):
        """Test encoding of balanceOf call data."""
        calldata = multicall_client._encode_balance_call(WALLET)

        assert calldata.startswith(BALANCE_OF_SELECTOR)
        assert len(calldata) == 36  # 4-byte selector + 32-byte padded address
        (decoded,) = decode(["address"], calldata[4:])
        assert decoded.lower() == WALLET.lower()

    def test_encode_multicall(self, multicall_client):
        """Test aggregate3 calldata carries every call with allowFailure set."""
        call_data = multicall_client._encode_balance_call(WALLET)
        encoded = multicall_client._encode_multicall([(USDC, call_data), (DAI, call_data)])

        assert encoded.startswith("0x" + AGGREGATE3_SELECTOR.hex())
        (calls,) = decode(["(address,bool,bytes)[]"], bytes.fromhex(encoded[10:]))
        assert [target.lower() for target, _, _ in calls] == [USDC.lower(), DAI.lower()]
        assert all(allow_failure for _, allow_failure, _ in calls)
        assert all(data == call_data for _, _, data in calls)

    def test_decode_multicall(self, multicall_client):
        result = aggregate_result([(True, uint(5)), (False, b"")])

        assert multicall_client._decode_multicall(result) == [(True, uint(5)), (False, b"")]

    @pytest.mark.parametrize("result", ["0x", "", "0x1234"])
    def test_decode_multicall_rejects_bad_data(self, multicall_client, result):
        with pytest.raises(MulticallError):
            multicall_client._decode_multicall(result)

    def test_multicall_error_is_provider_error(self):
        assert isinstance(MulticallError("boom"), ProviderUnavailableError)

    @pytest.mark.asyncio
    async def test_aggregate_targets_multicall3(self, multicall_client):
        multicall_client._rpc_call = AsyncMock(return_value=aggregate_result([(True, uint(1))]))

        await multicall_client.aggregate(Chain.BASE, [(USDC, b"\x00")], block_number=12345678)

        chain, method, params = multicall_client._rpc_call.call_args[0]
        assert chain is Chain.BASE
        assert method == "eth_call"
        assert params[0]["to"] == MULTICALL3_ADDRESS
        assert params[1] == hex(12345678)

    @pytest.mark.asyncio
    async def test_get_native_balance(self, multicall_client):
        """Test native balance retrieval at a specific block."""
        multicall_client._rpc_call = AsyncMock(return_value="0xde0b6b3a7640000")

        balance = await multicall_client._get_native_balance(Chain.ETHEREUM, WALLET, 100)

        assert balance == 10 ** 18
        assert multicall_client._rpc_call.call_args[0][2] == [WALLET, hex(100)]

    @pytest.mark.asyncio
    async def test_get_token_balances_skips_failures_and_zero(self, multicall_client):
        """Test failed, short and zero sub-calls are dropped."""
        tokens = [USDC, DAI, "0x0000000000000000000000000000000000000001", "0x0000000000000000000000000000000000000002"]
        multicall_client._rpc_call = AsyncMock(return_value=aggregate_result([
            (True, uint(500_000_000)),
            (True, uint(0)),
            (False, b""),
            (True, b"\x01"),
        ]))

        balances = await multicall_client.get_token_balances(Chain.ETHEREUM, WALLET, tokens)

        assert balances == {USDC.lower(): 500_000_000}

    @pytest.mark.asyncio
    async def test_get_token_balances_empty(self, multicall_client):
        multicall_client._rpc_call = AsyncMock()

        assert await multicall_client.get_token_balances(Chain.ETHEREUM, WALLET, []) == {}
        multicall_client._rpc_call.assert_not_called()

    @pytest.mark.asyncio
    async def test_get_wallet_balances(self, multicall_client):
        """Test native plus allow-listed balances for a wallet."""
        allow_list = get_chain_config(Chain.ETHEREUM).allow_list
        entries = [(True, uint(0))] * len(allow_list)
        entries[1] = (True, uint(250_000_000))  # USDC

        multicall_client._get_native_balance = AsyncMock(return_value=10 ** 18)
        multicall_client._rpc_call = AsyncMock(return_value=aggregate_result(entries))

        balances = await multicall_client.get_wallet_balances(Chain.ETHEREUM, WALLET, 19_000_000)

        assert balances == {
            NATIVE_TOKEN_ADDRESS: 10 ** 18,
            allow_list[1].address.lower(): 250_000_000,
        }

    @pytest.mark.asyncio
    async def test_get_wallet_balances_native_failure(self, multicall_client):
        """Test a failed eth_getBalance still returns token balances."""
        allow_list = get_chain_config(Chain.BASE).allow_list
        entries = [(True, uint(7))] + [(True, uint(0))] * (len(allow_list) - 1)

        multicall_client._get_native_balance = AsyncMock(
            side_effect=ProviderUnavailableError("rpc-base", "timeout")
        )
        multicall_client._rpc_call = AsyncMock(return_value=aggregate_result(entries))

        balances = await multicall_client.get_wallet_balances(Chain.BASE, WALLET)

        assert balances == {allow_list[0].address.lower(): 7}

    @pytest.mark.asyncio
    async def test_get_wallet_balances_multicall_failure_propagates(self, multicall_client):
        multicall_client._get_native_balance = AsyncMock(return_value=1)
        multicall_client._rpc_call = AsyncMock(return_value="0x")

        with pytest.raises(MulticallError):
            await multicall_client.get_wallet_balances(Chain.ETHEREUM, WALLET, 1)

    @pytest.mark.asyncio
    async def test_get_token_metadata(self, multicall_client):
        multicall_client._rpc_call = AsyncMock(return_value=aggregate_result([
            (True, uint(6)),
            (True, encode(["string"], ["USDC"])),
        ]))

        metadata = await multicall_client.get_token_metadata(Chain.ETHEREUM, USDC)

        assert metadata.symbol == "USDC"
        assert metadata.decimals == 6

    @pytest.mark.asyncio
    async def test_get_token_metadata_bytes32_symbol(self, multicall_client):
        """Test tokens returning bytes32 symbols (e.g. MKR) are decoded."""
        multicall_client._rpc_call = AsyncMock(return_value=aggregate_result([
            (True, uint(18)),
            (True, b"MKR".ljust(32, b"\x00")),
        ]))

        metadata = await multicall_client.get_token_metadata(Chain.ETHEREUM, DAI)

        assert metadata.symbol == "MKR"
        assert metadata.decimals == 18

    @pytest.mark.asyncio
    async def test_get_token_metadata_failed_call(self, multicall_client):
        multicall_client._rpc_call = AsyncMock(return_value=aggregate_result([
            (False, b""),
            (True, encode(["string"], ["USDC"])),
        ]))

        assert await multicall_client.get_token_metadata(Chain.ETHEREUM, USDC) is None
