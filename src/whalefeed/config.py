"""
Configuration loading.

Order: defaults -> optional YAML file -> environment (``.env`` loaded first).
Bad numbers never stop the process; they fall back to the default with a
warning, and a missing API key only disables the sources that need it.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from dotenv import load_dotenv

from whalefeed.core.backoff import BackoffConfig
from whalefeed.data_providers import birdeye_provider, dexscreener_provider
from whalefeed.monitoring.extractor import to_number
from whalefeed.monitoring.filters import PairThresholds, TradeThresholds
from whalefeed.utils.logger import get_logger

logger = get_logger(__name__)

MODES = ("poll", "websocket")


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 3000
    response_limit: int = 100


@dataclass
class BirdeyeConfig:
    api_key: str = ""
    chain: str = "solana"
    pairs_urls: List[str] = field(default_factory=lambda: list(birdeye_provider.DEFAULT_PAIRS_URLS))
    trades_urls: List[str] = field(default_factory=lambda: list(birdeye_provider.DEFAULT_TRADES_URLS))
    ws_url: str = birdeye_provider.WS_URL


@dataclass
class DexScreenerConfig:
    enabled: bool = True
    pairs_urls: List[str] = field(default_factory=lambda: list(dexscreener_provider.DEFAULT_PAIRS_URLS))


@dataclass
class PollingConfig:
    tick_interval: float = 15.0
    pairs_interval: float = 60.0
    trades_interval: float = 30.0
    initial_backoff: float = 30.0
    max_backoff: float = 600.0
    jitter_ratio: float = 0.2
    request_timeout: float = 15.0
    page_size: int = 50

    def backoff_for(self, interval: float) -> BackoffConfig:
        return BackoffConfig(
            base_interval=interval,
            initial_backoff=self.initial_backoff,
            max_backoff=self.max_backoff,
            jitter_ratio=self.jitter_ratio,
        )


@dataclass
class StorageConfig:
    capacity: int = 200
    seen_multiplier: int = 10


@dataclass
class FeedConfig:
    name: str = "whalefeed"
    mode: str = "poll"
    log_level: str = "INFO"
    log_file: Optional[str] = None
    server: ServerConfig = field(default_factory=ServerConfig)
    birdeye: BirdeyeConfig = field(default_factory=BirdeyeConfig)
    dexscreener: DexScreenerConfig = field(default_factory=DexScreenerConfig)
    filters: PairThresholds = field(default_factory=PairThresholds)
    trade_filters: TradeThresholds = field(default_factory=TradeThresholds)
    polling: PollingConfig = field(default_factory=PollingConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    def to_dict(self, redact: bool = True) -> Dict[str, Any]:
        data = asdict(self)
        if redact and data["birdeye"]["api_key"]:
            data["birdeye"]["api_key"] = "***"
        return data


# ============================================
# COERCION
# ============================================

def _number(value: Any, default: float, name: str, minimum: Optional[float] = None) -> float:
    number = to_number(value, None)
    if number is None or (minimum is not None and number < minimum):
        if value not in (None, ""):
            logger.warning(f"[CONFIG] Invalid {name}={value!r}, using {default}")
        return default
    return number


def _integer(value: Any, default: int, name: str, minimum: int = 1) -> int:
    return int(_number(value, default, name, minimum))


def _boolean(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if value is None or value == "":
        return default
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _url_list(value: Any, default: List[str]) -> List[str]:
    if value is None or value == "":
        return default
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = value
    else:
        return default
    urls = [str(item).strip() for item in items if str(item).strip()]
    return urls or default


# ============================================
# LOADING
# ============================================

def load_yaml_config(path: Optional[str]) -> Dict[str, Any]:
    """Read a YAML config file; a missing file is logged and ignored."""
    if not path:
        return {}
    config_path = Path(path)
    if not config_path.exists():
        logger.warning(f"[CONFIG] Config file not found: {config_path}")
        return {}
    with open(config_path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{config_path}: top level must be a mapping")
    return data


def _section(data: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = data.get(name)
    return value if isinstance(value, Mapping) else {}


def _pick(env: Mapping[str, str], env_names: tuple, section: Mapping[str, Any], key: str) -> Any:
    for env_name in env_names:
        value = env.get(env_name)
        if value not in (None, ""):
            return value
    return section.get(key)


def build_config(data: Mapping[str, Any], env: Mapping[str, str]) -> FeedConfig:
    """Merge a parsed YAML mapping with environment variables."""
    defaults = FeedConfig()
    server_s = _section(data, "server")
    birdeye_s = _section(data, "birdeye")
    dex_s = _section(data, "dexscreener")
    filters_s = _section(data, "filters")
    polling_s = _section(data, "polling")
    storage_s = _section(data, "storage")

    server = ServerConfig(
        host=str(_pick(env, ("HOST",), server_s, "host") or defaults.server.host),
        port=_integer(_pick(env, ("PORT",), server_s, "port"), defaults.server.port, "port"),
        response_limit=_integer(
            _pick(env, ("RESPONSE_LIMIT",), server_s, "response_limit"),
            defaults.server.response_limit, "response_limit",
        ),
    )

    birdeye = BirdeyeConfig(
        api_key=str(_pick(env, ("BIRDEYE_API_KEY", "BIRDEYE_KEY"), birdeye_s, "api_key") or ""),
        chain=str(_pick(env, ("BIRDEYE_CHAIN",), birdeye_s, "chain") or defaults.birdeye.chain),
        pairs_urls=_url_list(_pick(env, ("BIRDEYE_PAIRS_URLS",), birdeye_s, "pairs_urls"), defaults.birdeye.pairs_urls),
        trades_urls=_url_list(_pick(env, ("BIRDEYE_TRADES_URLS",), birdeye_s, "trades_urls"), defaults.birdeye.trades_urls),
        ws_url=str(_pick(env, ("BIRDEYE_WS_URL",), birdeye_s, "ws_url") or defaults.birdeye.ws_url),
    )

    dexscreener = DexScreenerConfig(
        enabled=_boolean(_pick(env, ("ENABLE_DEXSCREENER",), dex_s, "enabled"), defaults.dexscreener.enabled),
        pairs_urls=_url_list(_pick(env, ("DEXSCREENER_PAIRS_URLS",), dex_s, "pairs_urls"), defaults.dexscreener.pairs_urls),
    )

    filters = PairThresholds(
        min_liquidity_usd=_number(_pick(env, ("MIN_LIQUIDITY_USD",), filters_s, "min_liquidity_usd"), 0.0, "min_liquidity_usd", 0),
        min_volume_24h_usd=_number(_pick(env, ("MIN_VOLUME_24H_USD",), filters_s, "min_volume_24h_usd"), 0.0, "min_volume_24h_usd", 0),
        min_trades_24h=_number(_pick(env, ("MIN_TRADES_24H",), filters_s, "min_trades_24h"), 0.0, "min_trades_24h", 0),
        min_age_minutes=_number(_pick(env, ("MIN_AGE_MINUTES",), filters_s, "min_age_minutes"), 0.0, "min_age_minutes", 0),
        require_created_at=_boolean(_pick(env, ("REQUIRE_CREATED_AT",), filters_s, "require_created_at"), False),
    )
    trade_filters = TradeThresholds(
        min_trade_usd=_number(_pick(env, ("MIN_TRADE_USD",), filters_s, "min_trade_usd"), 0.0, "min_trade_usd", 0),
    )

    p = defaults.polling
    polling = PollingConfig(
        tick_interval=_number(_pick(env, ("TICK_INTERVAL",), polling_s, "tick_interval"), p.tick_interval, "tick_interval", 0.1),
        pairs_interval=_number(_pick(env, ("PAIRS_POLL_INTERVAL",), polling_s, "pairs_interval"), p.pairs_interval, "pairs_interval", 1),
        trades_interval=_number(_pick(env, ("TRADES_POLL_INTERVAL",), polling_s, "trades_interval"), p.trades_interval, "trades_interval", 1),
        initial_backoff=_number(_pick(env, ("INITIAL_BACKOFF",), polling_s, "initial_backoff"), p.initial_backoff, "initial_backoff", 0),
        max_backoff=_number(_pick(env, ("MAX_BACKOFF",), polling_s, "max_backoff"), p.max_backoff, "max_backoff", 0),
        jitter_ratio=_number(_pick(env, ("JITTER_RATIO",), polling_s, "jitter_ratio"), p.jitter_ratio, "jitter_ratio", 0),
        request_timeout=_number(_pick(env, ("REQUEST_TIMEOUT",), polling_s, "request_timeout"), p.request_timeout, "request_timeout", 0.1),
        page_size=_integer(_pick(env, ("PAGE_SIZE",), polling_s, "page_size"), p.page_size, "page_size"),
    )
    if polling.max_backoff < polling.initial_backoff:
        logger.warning(f"[CONFIG] max_backoff < initial_backoff, raising max_backoff to {polling.initial_backoff}")
        polling.max_backoff = polling.initial_backoff
    polling.jitter_ratio = min(polling.jitter_ratio, 0.9)

    storage = StorageConfig(
        capacity=_integer(_pick(env, ("BUFFER_CAPACITY",), storage_s, "capacity"), defaults.storage.capacity, "capacity"),
        seen_multiplier=_integer(_pick(env, ("SEEN_MULTIPLIER",), storage_s, "seen_multiplier"), defaults.storage.seen_multiplier, "seen_multiplier"),
    )

    mode = str(_pick(env, ("FEED_MODE",), data, "mode") or defaults.mode).lower()
    if mode not in MODES:
        logger.warning(f"[CONFIG] Unknown mode {mode!r}, using 'poll'")
        mode = "poll"

    return FeedConfig(
        name=str(data.get("name") or defaults.name),
        mode=mode,
        log_level=str(_pick(env, ("LOG_LEVEL",), data, "log_level") or defaults.log_level),
        log_file=_pick(env, ("LOG_FILE",), data, "log_file") or None,
        server=server,
        birdeye=birdeye,
        dexscreener=dexscreener,
        filters=filters,
        trade_filters=trade_filters,
        polling=polling,
        storage=storage,
    )


def load_config(path: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> FeedConfig:
    """Load ``.env``, the YAML file (``path`` or ``WHALEFEED_CONFIG``) and env overrides."""
    if env is None:
        load_dotenv()
        env = os.environ
    data = load_yaml_config(path or env.get("WHALEFEED_CONFIG"))
    cfg = build_config(data, env)
    if not cfg.birdeye.api_key:
        logger.warning("[CONFIG] BIRDEYE_API_KEY not set - Birdeye sources disabled")
    return cfg


def print_config_summary(cfg: FeedConfig) -> None:
    logger.info(f"[CONFIG] {cfg.name}: mode={cfg.mode}, port={cfg.server.port}")
    logger.info(
        f"[CONFIG] Filters: liquidity>={cfg.filters.min_liquidity_usd:.0f}$ "
        f"volume24h>={cfg.filters.min_volume_24h_usd:.0f}$ trades24h>={cfg.filters.min_trades_24h:.0f} "
        f"age>={cfg.filters.min_age_minutes}m trade>={cfg.trade_filters.min_trade_usd:.0f}$"
    )
    logger.info(
        f"[CONFIG] Polling: tick={cfg.polling.tick_interval}s pairs={cfg.polling.pairs_interval}s "
        f"trades={cfg.polling.trades_interval}s backoff={cfg.polling.initial_backoff}-{cfg.polling.max_backoff}s"
    )
