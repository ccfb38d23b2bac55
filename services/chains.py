"""Supported chains and their per-chain provider settings."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional, Tuple, Union

from services.errors import UnsupportedChainError

NATIVE_TOKEN_ADDRESS = "0x0000000000000000000000000000000000000000"

# ERC-20 Transfer(address,address,uint256)
ERC20_TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


class Chain(str, Enum):
    ETHEREUM = "ethereum"
    ARBITRUM = "arbitrum"
    OPTIMISM = "optimism"
    BASE = "base"
    POLYGON = "polygon"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class AllowListToken:
    address: str
    symbol: str
    decimals: int


@dataclass(frozen=True)
class ChainConfig:
    chain_id: int
    native_symbol: str
    avg_block_time: float  # seconds
    genesis_timestamp: int
    goldrush_name: str
    defillama_prefix: str
    hypersync_url: str
    alchemy_network: str
    public_rpc_url: str
    allow_list: Tuple[AllowListToken, ...] = field(default_factory=tuple)


CHAIN_CONFIGS = {
    Chain.ETHEREUM: ChainConfig(
        chain_id=1,
        native_symbol="ETH",
        avg_block_time=12,
        genesis_timestamp=1438269973,
        goldrush_name="eth-mainnet",
        defillama_prefix="ethereum",
        hypersync_url="https://eth.hypersync.xyz",
        alchemy_network="eth-mainnet",
        public_rpc_url="https://eth.llamarpc.com",
        allow_list=(
            AllowListToken("0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2", "WETH", 18),
            AllowListToken("0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48", "USDC", 6),
            AllowListToken("0xdAC17F958D2ee523a2206206994597C13D831ec7", "USDT", 6),
            AllowListToken("0x6B175474E89094C44Da98b954EedeAC495271d0F", "DAI", 18),
            AllowListToken("0x7f39C581F595B53c5cb19bD0b3f8dA6c935E2Ca0", "wstETH", 18),
            AllowListToken("0xae78736Cd615f374D3085123A210448E74Fc6393", "rETH", 18),
            AllowListToken("0xBe9895146f7AF43049ca1c1AE358B0541Ea49704", "cbETH", 18),
            AllowListToken("0x35fA164735182de50811E8e2E824cFb9B6118ac2", "eETH", 18),
            AllowListToken("0xCd5fE23C85820F7B72D0926FC9b05b43E359b7ee", "weETH", 18),
            AllowListToken("0x2260FAC5E5542a773Aa44fBCfeDf7C193bc2C599", "WBTC", 8),
            AllowListToken("0x514910771AF9Ca656af840dff83E8264EcF986CA", "LINK", 18),
            AllowListToken("0x1f9840a85d5aF5bf1D1762F925BDADdC4201F984", "UNI", 18),
            AllowListToken("0x7Fc66500c84A76Ad7e9c93437bFc5Ac33E2DDaE9", "AAVE", 18),
        ),
    ),
    Chain.ARBITRUM: ChainConfig(
        chain_id=42161,
        native_symbol="ETH",
        avg_block_time=0.25,
        genesis_timestamp=1622240000,
        goldrush_name="arbitrum-mainnet",
        defillama_prefix="arbitrum",
        hypersync_url="https://arbitrum.hypersync.xyz",
        alchemy_network="arb-mainnet",
        public_rpc_url="https://arb1.arbitrum.io/rpc",
        allow_list=(
            AllowListToken("0x82aF49447D8a07e3bd95BD0d56f35241523fBab1", "WETH", 18),
            AllowListToken("0xaf88d065e77c8cC2239327C5EDb3A432268e5831", "USDC", 6),
            AllowListToken("0xFF970A61A04b1cA14834A43f5dE4533eBDDB5CC8", "USDC.e", 6),
            AllowListToken("0xFd086bC7CD5C481DCC9C85ebE478A1C0b69FCbb9", "USDT", 6),
            AllowListToken("0xDA10009cBd5D07dd0CeCc66161FC93D7c9000da1", "DAI", 18),
            AllowListToken("0x5979D7b546E38E414F7E9822514be443A4800529", "wstETH", 18),
            AllowListToken("0x2f2a2543B76A4166549F7aaB2e75Bef0aefC5B0f", "WBTC", 8),
            AllowListToken("0x912CE59144191C1204E64559FE8253a0e49E6548", "ARB", 18),
        ),
    ),
    Chain.OPTIMISM: ChainConfig(
        chain_id=10,
        native_symbol="ETH",
        avg_block_time=2,
        genesis_timestamp=1636665600,
        goldrush_name="optimism-mainnet",
        defillama_prefix="optimism",
        hypersync_url="https://optimism.hypersync.xyz",
        alchemy_network="opt-mainnet",
        public_rpc_url="https://mainnet.optimism.io",
        allow_list=(
            AllowListToken("0x4200000000000000000000000000000000000006", "WETH", 18),
            AllowListToken("0x0b2C639c533813f4Aa9D7837CAf62653d097Ff85", "USDC", 6),
            AllowListToken("0x7F5c764cBc14f9669B88837ca1490cCa17c31607", "USDC.e", 6),
            AllowListToken("0x94b008aA00579c1307B0EF2c499aD98a8ce58e58", "USDT", 6),
            AllowListToken("0xDA10009cBd5D07dd0CeCc66161FC93D7c9000da1", "DAI", 18),
            AllowListToken("0x1F32b1c2345538c0c6f582fCB022739c4A194Ebb", "wstETH", 18),
            AllowListToken("0x4200000000000000000000000000000000000042", "OP", 18),
        ),
    ),
    Chain.BASE: ChainConfig(
        chain_id=8453,
        native_symbol="ETH",
        avg_block_time=2,
        genesis_timestamp=1686789600,
        goldrush_name="base-mainnet",
        defillama_prefix="base",
        hypersync_url="https://base.hypersync.xyz",
        alchemy_network="base-mainnet",
        public_rpc_url="https://mainnet.base.org",
        allow_list=(
            AllowListToken("0x4200000000000000000000000000000000000006", "WETH", 18),
            AllowListToken("0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913", "USDC", 6),
            AllowListToken("0xd9aAEc86B65D86f6A7B5B1b0c42FFA531710b6CA", "USDbC", 6),
            AllowListToken("0x50c5725949A6F0c72E6C4a641F24049A917DB0Cb", "DAI", 18),
            AllowListToken("0xc1CBa3fCea344f92D9239c08C0568f6F2F0ee452", "wstETH", 18),
            AllowListToken("0x2Ae3F1Ec7F1F5012CFEab0185bfc7aa3cf0DEc22", "cbETH", 18),
            AllowListToken("0x04C0599Ae5A44757c0af6F9eC3b93da8976c150A", "weETH", 18),
        ),
    ),
    Chain.POLYGON: ChainConfig(
        chain_id=137,
        native_symbol="MATIC",
        avg_block_time=2,
        genesis_timestamp=1590824836,
        goldrush_name="matic-mainnet",
        defillama_prefix="polygon",
        hypersync_url="https://polygon.hypersync.xyz",
        alchemy_network="polygon-mainnet",
        public_rpc_url="https://polygon-rpc.com",
        allow_list=(
            AllowListToken("0x7ceB23fD6bC0adD59E62ac25578270cFf1b9f619", "WETH", 18),
            AllowListToken("0x0d500B1d8E8eF31E21C99d1Db9A6444d3ADf1270", "WMATIC", 18),
            AllowListToken("0x3c499c542cEF5E3811e1192ce70d8cC03d5c3359", "USDC", 6),
            AllowListToken("0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174", "USDC.e", 6),
            AllowListToken("0xc2132D05D31c914a87C6611C10748AEb04B58e8F", "USDT", 6),
            AllowListToken("0x8f3Cf7ad23Cd3CaDbD9735AFf958023239c6A063", "DAI", 18),
            AllowListToken("0x1BFD67037B42Cf73acF2047067bd4F2C47D9BfD6", "WBTC", 8),
            AllowListToken("0x03b54A6e9a984069379fae1a4fC4dBAE93B3bCCD", "wstETH", 18),
        ),
    ),
}

DEFAULT_CHAINS: List[Chain] = [
    Chain.ETHEREUM,
    Chain.ARBITRUM,
    Chain.OPTIMISM,
    Chain.BASE,
    Chain.POLYGON,
]

_CHAIN_BY_ID = {config.chain_id: chain for chain, config in CHAIN_CONFIGS.items()}


def get_chain_config(chain: Chain) -> ChainConfig:
    return CHAIN_CONFIGS[chain]


def parse_chain(value: Union[Chain, str, int]) -> Chain:
    """Resolve a chain name or numeric chain id into a ``Chain``.

    Raises:
        UnsupportedChainError: If the value names no supported chain
    """
    if isinstance(value, Chain):
        return value

    if isinstance(value, int) or (isinstance(value, str) and value.strip().isdigit()):
        chain = _CHAIN_BY_ID.get(int(value))
        if chain is None:
            raise UnsupportedChainError(f"Unsupported chain id: {value}")
        return chain

    try:
        return Chain(str(value).strip().lower())
    except ValueError:
        raise UnsupportedChainError(f"Unsupported chain: {value}") from None


def parse_chains(values: Optional[Iterable[Union[Chain, str, int]]]) -> List[Chain]:
    """Resolve a chain subset, defaulting to every supported chain.

    Duplicates are dropped; request order is kept.
    """
    if not values:
        return list(DEFAULT_CHAINS)

    chains: List[Chain] = []
    for value in values:
        chain = parse_chain(value)
        if chain not in chains:
            chains.append(chain)
    return chains


def rpc_url_for(chain: Chain, alchemy_api_key: str = "", template: Optional[str] = None) -> str:
    """Alchemy URL when a key is configured, otherwise the public RPC."""
    config = CHAIN_CONFIGS[chain]
    if alchemy_api_key:
        template = template or "https://{network}.g.alchemy.com/v2/{api_key}"
        return template.format(network=config.alchemy_network, api_key=alchemy_api_key)
    return config.public_rpc_url
