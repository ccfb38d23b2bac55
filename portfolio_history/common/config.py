import os
from dataclasses import dataclass, field
from typing import Callable, Optional
from dotenv import load_dotenv

from services.errors import ConfigurationError

load_dotenv()


def _parse_env(name: str, default: str, cast: Callable):
    raw = os.getenv(name, default)
    try:
        return cast(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a valid {cast.__name__}, got {raw!r}") from None


def _env(name: str, default: str, cast: Callable = str):
    """Dataclass field read from the environment each time Settings() is built."""
    return field(default_factory=lambda: _parse_env(name, default, cast))


def _as_bool(raw: str) -> bool:
    return raw.lower() == "true"


@dataclass
class Settings:
    # Logging
    log_level: str = _env("LOG_LEVEL", "INFO")
    log_dir: str = _env("LOG_DIR", "./logs")

    # Cache (empty REDIS_URL keeps everything in process memory)
    redis_url: str = _env("REDIS_URL", "")
    progress_ttl: int = _env("PROGRESS_TTL", "300", int)
    progress_flush_timeout: float = _env("PROGRESS_FLUSH_TIMEOUT", "2", float)

    # API Keys (principle of least privilege - only load when needed)
    covalent_api_key: str = _env("COVALENT_API_KEY", "")
    envio_api_token: str = _env("ENVIO_API_TOKEN", "")
    alchemy_api_key: str = _env("ALCHEMY_API_KEY", "")

    # Tier switches
    enable_event_replay: bool = _env("ENABLE_EVENT_REPLAY", "true", _as_bool)

    # HTTP Settings (per-provider deadlines, seconds)
    snapshot_timeout: int = _env("SNAPSHOT_TIMEOUT", "8", int)
    price_timeout: int = _env("PRICE_TIMEOUT", "10", int)
    rpc_timeout: int = _env("RPC_TIMEOUT", "10", int)
    hypersync_timeout: int = _env("HYPERSYNC_TIMEOUT", "30", int)
    max_retries: int = _env("MAX_RETRIES", "2", int)

    # Pipeline sizing
    valuation_concurrency: int = _env("VALUATION_CONCURRENCY", "5", int)
    price_batch_size: int = _env("PRICE_BATCH_SIZE", "100", int)

    # Interpolation heuristics (empirically tuned, see DESIGN.md)
    anomaly_threshold_ratio: float = _env("ANOMALY_THRESHOLD_RATIO", "0.3", float)
    corruption_multiplier: float = _env("CORRUPTION_MULTIPLIER", "10", float)
    leading_decay: float = _env("LEADING_DECAY", "0.98", float)

    # Pinned Base URLs (prevent SSRF)
    goldrush_base_url: str = "https://api.covalenthq.com/v1"
    defillama_base_url: str = "https://coins.llama.fi"
    alchemy_url_template: str = "https://{network}.g.alchemy.com/v2/{api_key}"

    def validate(self):
        """Validate configuration on startup"""
        if self.valuation_concurrency < 1:
            raise ConfigurationError("VALUATION_CONCURRENCY must be at least 1")
        if self.price_batch_size < 1:
            raise ConfigurationError("PRICE_BATCH_SIZE must be at least 1")
        if not 0 < self.anomaly_threshold_ratio <= 1:
            raise ConfigurationError("ANOMALY_THRESHOLD_RATIO must be in (0, 1]")
        if self.corruption_multiplier <= 1:
            raise ConfigurationError("CORRUPTION_MULTIPLIER must be greater than 1")
        if not 0 < self.leading_decay <= 1:
            raise ConfigurationError("LEADING_DECAY must be in (0, 1]")
        if self.max_retries < 0:
            raise ConfigurationError("MAX_RETRIES must not be negative")
        if self.progress_flush_timeout < 0:
            raise ConfigurationError("PROGRESS_FLUSH_TIMEOUT must not be negative")

        # Provider keys are optional: a missing key only disables that tier
        return True


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Load and validate settings from the environment on first use.

    Raises:
        ConfigurationError: On a malformed or out-of-range value
    """
    global _settings
    if _settings is None:
        loaded = Settings()
        loaded.validate()
        _settings = loaded
    return _settings


def reset_settings():
    """Forget the loaded settings so the next get_settings() re-reads the environment."""
    global _settings
    _settings = None


def get_config():
    """Get configuration settings"""
    settings = get_settings()
    return {
        "log_level": settings.log_level,
        "log_dir": settings.log_dir,
        "redis_url": settings.redis_url,
        "enable_event_replay": settings.enable_event_replay,
        "snapshot_timeout": settings.snapshot_timeout,
        "price_timeout": settings.price_timeout,
        "rpc_timeout": settings.rpc_timeout,
        "max_retries": settings.max_retries,
        "valuation_concurrency": settings.valuation_concurrency,
        "price_batch_size": settings.price_batch_size,
    }
