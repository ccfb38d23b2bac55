"""Result, data-point and progress models for historical portfolio requests."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

PROGRESS_STATUSES = (
    "pending",
    "fetching_balances",
    "fetching_prices",
    "processing",
    "complete",
    "error",
)


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def from_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class HistoricalDataPoint:
    timestamp: datetime
    total_usd: float

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": to_iso(self.timestamp), "total_usd": self.total_usd}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoricalDataPoint":
        return cls(timestamp=from_iso(data["timestamp"]), total_usd=float(data["total_usd"]))


@dataclass
class PriceQuote:
    chain: str
    token_address: str
    timestamp: datetime
    price_usd: float

    @property
    def key(self) -> str:
        return f"{self.chain}:{self.token_address.lower()}"

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": to_iso(self.timestamp), "price_usd": self.price_usd}


@dataclass
class ProgressRecord:
    """Pollable status of one request, overwritten in place."""

    request_id: str
    wallet_address: str
    timeframe: str
    status: str = "pending"
    stage: str = ""
    current_step: int = 0
    total_steps: int = 0
    processed_timestamps: int = 0
    total_timestamps: int = 0
    current_chain: Optional[str] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "wallet_address": self.wallet_address,
            "timeframe": self.timeframe,
            "status": self.status,
            "stage": self.stage,
            "current_step": self.current_step,
            "total_steps": self.total_steps,
            "processed_timestamps": self.processed_timestamps,
            "total_timestamps": self.total_timestamps,
            "current_chain": self.current_chain,
            "started_at": to_iso(self.started_at),
            "updated_at": to_iso(self.updated_at),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProgressRecord":
        return cls(
            request_id=data["request_id"],
            wallet_address=data["wallet_address"],
            timeframe=data["timeframe"],
            status=data.get("status", "pending"),
            stage=data.get("stage", ""),
            current_step=int(data.get("current_step", 0)),
            total_steps=int(data.get("total_steps", 0)),
            processed_timestamps=int(data.get("processed_timestamps", 0)),
            total_timestamps=int(data.get("total_timestamps", 0)),
            current_chain=data.get("current_chain"),
            started_at=from_iso(data["started_at"]),
            updated_at=from_iso(data["updated_at"]),
            error=data.get("error"),
        )


@dataclass
class HistoricalPortfolioResult:
    wallet_address: str
    timeframe: str
    data_points: List[HistoricalDataPoint]
    start_value: float
    end_value: float
    change: float
    change_percent: float
    chains_with_data: List[str] = field(default_factory=list)
    price_history: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    cache_hit: bool = False
    request_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "wallet_address": self.wallet_address,
            "timeframe": self.timeframe,
            "data_points": [point.to_dict() for point in self.data_points],
            "start_value": self.start_value,
            "end_value": self.end_value,
            "change": self.change,
            "change_percent": self.change_percent,
            "chains_with_data": list(self.chains_with_data),
            "price_history": {
                key: [dict(entry) for entry in entries]
                for key, entries in self.price_history.items()
            },
            "fetched_at": to_iso(self.fetched_at),
            "cache_hit": self.cache_hit,
            "request_id": self.request_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoricalPortfolioResult":
        return cls(
            wallet_address=data["wallet_address"],
            timeframe=data["timeframe"],
            data_points=[HistoricalDataPoint.from_dict(point) for point in data.get("data_points", [])],
            start_value=float(data.get("start_value", 0)),
            end_value=float(data.get("end_value", 0)),
            change=float(data.get("change", 0)),
            change_percent=float(data.get("change_percent", 0)),
            chains_with_data=list(data.get("chains_with_data", [])),
            price_history={
                key: [dict(entry) for entry in entries]
                for key, entries in (data.get("price_history") or {}).items()
            },
            fetched_at=from_iso(data["fetched_at"]) if data.get("fetched_at") else datetime.now(timezone.utc),
            cache_hit=bool(data.get("cache_hit", False)),
            request_id=data.get("request_id"),
        )
