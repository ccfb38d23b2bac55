"""Data models shared by the balance tiers."""

from dataclasses import dataclass
from typing import Any, Dict, Tuple

from services.chains import Chain


def to_decimal_amount(raw: int, decimals: int) -> float:
    """Convert a raw token-unit integer to a float amount."""
    return raw / (10 ** decimals)


@dataclass(frozen=True)
class TokenMetadata:
    symbol: str
    decimals: int


UNKNOWN_TOKEN = TokenMetadata(symbol="UNKNOWN", decimals=18)


@dataclass(frozen=True)
class ChainBalanceSnapshot:
    """One token balance on one chain at one sample timestamp.

    Raw amounts travel as both an integer string and a float so that neither
    precision nor convenience is lost if only one survives serialisation.
    """

    chain: Chain
    token_address: str
    symbol: str
    decimals: int
    balance_raw: str
    balance: float

    @classmethod
    def from_raw(cls, chain: Chain, token_address: str, raw: int,
                 metadata: TokenMetadata) -> "ChainBalanceSnapshot":
        return cls(
            chain=chain,
            token_address=token_address.lower(),
            symbol=metadata.symbol,
            decimals=metadata.decimals,
            balance_raw=str(raw),
            balance=to_decimal_amount(raw, metadata.decimals),
        )

    @property
    def price_key(self) -> str:
        return f"{self.chain.value}:{self.token_address.lower()}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain": self.chain.value,
            "token_address": self.token_address,
            "symbol": self.symbol,
            "decimals": self.decimals,
            "balance_raw": self.balance_raw,
            "balance": self.balance,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChainBalanceSnapshot":
        return cls(
            chain=Chain(data["chain"]),
            token_address=data["token_address"],
            symbol=data["symbol"],
            decimals=int(data["decimals"]),
            balance_raw=str(data["balance_raw"]),
            balance=float(data["balance"]),
        )


@dataclass(frozen=True)
class TransferEvent:
    """A non-zero ERC-20 transfer touching the wallet."""

    chain: Chain
    token_address: str
    from_address: str
    to_address: str
    value: int
    block_number: int
    transaction_hash: str
    log_index: int

    @property
    def sort_key(self) -> Tuple[int, int]:
        return (self.block_number, self.log_index)
