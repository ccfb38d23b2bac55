"""Tests for chain parsing and per-chain configuration."""

import pytest
from web3 import Web3

from services.chains import (
    CHAIN_CONFIGS,
    DEFAULT_CHAINS,
    Chain,
    get_chain_config,
    parse_chain,
    parse_chains,
    rpc_url_for,
)
from services.errors import ConfigurationError, UnsupportedChainError


@pytest.mark.parametrize("value,expected", [
    ("ethereum", Chain.ETHEREUM),
    ("Arbitrum", Chain.ARBITRUM),
    (" base ", Chain.BASE),
    (10, Chain.OPTIMISM),
    ("137", Chain.POLYGON),
    (Chain.BASE, Chain.BASE),
])
def test_parse_chain(value, expected):
    assert parse_chain(value) is expected


@pytest.mark.parametrize("value", ["solana", "", 56, "999"])
def test_parse_chain_rejects_unknown(value):
    with pytest.raises(UnsupportedChainError):
        parse_chain(value)


def test_unsupported_chain_is_configuration_error():
    with pytest.raises(ConfigurationError):
        parse_chains(["ethereum", "fantom"])


def test_parse_chains_defaults_to_all():
    assert parse_chains(None) == DEFAULT_CHAINS
    assert parse_chains([]) == DEFAULT_CHAINS
    assert len(DEFAULT_CHAINS) == 5


def test_parse_chains_dedupes_and_keeps_order():
    assert parse_chains(["base", "ethereum", 8453]) == [Chain.BASE, Chain.ETHEREUM]


def test_every_chain_is_configured():
    for chain in Chain:
        config = get_chain_config(chain)
        assert config.avg_block_time > 0
        assert config.hypersync_url.startswith("https://")
        assert config.allow_list


def test_allow_list_addresses_are_valid():
    """Test every allow-listed token is a unique 20-byte address"""
    for config in CHAIN_CONFIGS.values():
        addresses = [token.address.lower() for token in config.allow_list]
        assert len(addresses) == len(set(addresses))
        for token in config.allow_list:
            assert Web3.is_address(token.address.lower())


def test_polygon_native_symbol():
    assert get_chain_config(Chain.POLYGON).native_symbol == "MATIC"
    assert get_chain_config(Chain.ARBITRUM).native_symbol == "ETH"


def test_rpc_url_for():
    assert rpc_url_for(Chain.BASE) == "https://mainnet.base.org"
    assert rpc_url_for(Chain.ETHEREUM, "key123") == (
        "https://eth-mainnet.g.alchemy.com/v2/key123"
    )
    assert rpc_url_for(Chain.ARBITRUM, "k", "https://rpc.test/{network}/{api_key}") == (
        "https://rpc.test/arb-mainnet/k"
    )
