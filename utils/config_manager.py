from typing import Any, Dict, Optional

DEFAULT_RPC_URL = "https://api.devnet.solana.com"

# interval / ttl per stream, in milliseconds
DEFAULT_STREAMS: Dict[str, Dict[str, int]] = {
    "position": {"interval_ms": 5000, "ttl_ms": 200},
    "market": {"interval_ms": 5000, "ttl_ms": 2000},
    "holdings": {"interval_ms": 5000, "ttl_ms": 2000},
}


class ConfigManager:
    def __init__(self, config: Dict[str, Any]):
        self.config = config

    def get(self, key: str, default: Any = None) -> Any:
        return self.config.get(key, default)

    # ------------------------------------------------------------------ #
    # RPC / program
    # ------------------------------------------------------------------ #
    def get_rpc_url(self) -> str:
        return (
            self.config.get("RPC", {}).get("url")
            or self.config.get("RPC_URL")
            or DEFAULT_RPC_URL
        )

    def get_commitment(self) -> str:
        return self.config.get("RPC", {}).get("commitment") or "confirmed"

    def get_request_timeout(self) -> float:
        return float(self.config.get("RPC", {}).get("timeout_s", 10))

    def get_program(self) -> Dict[str, Any]:
        return self.config.get("PROGRAM") or {}

    def get_program_id(self) -> str:
        return self.get_program().get("program_id") or ""

    def get_usdc_mint(self) -> Optional[str]:
        return self.get_program().get("usdc_mint") or None

    # ------------------------------------------------------------------ #
    # Streams / policies
    # ------------------------------------------------------------------ #
    def get_stream_policy(self, key: str) -> Dict[str, int]:
        policy = dict(DEFAULT_STREAMS.get(key, {"interval_ms": 5000, "ttl_ms": 2000}))
        policy.update(self.config.get("STREAMS", {}).get(key) or {})
        return {k: int(v) for k, v in policy.items()}

    def get_backoff_base_ms(self) -> int:
        return int(self.config.get("BACKOFF", {}).get("base_ms", 1000))

    def get_backoff_max_ms(self) -> int:
        return int(self.config.get("BACKOFF", {}).get("max_ms", 10000))

    def get_max_rate_limit_retries(self) -> int:
        return int(self.config.get("MAX_RATE_LIMIT_RETRIES", 5))

    def get_monitor(self) -> Dict[str, Any]:
        return self.config.get("MONITOR") or {}

    def is_monitor_enabled(self) -> bool:
        return bool(self.get_monitor().get("enabled", False))

    def get_monitor_interval_ms(self) -> int:
        return int(self.get_monitor().get("interval_ms", 400))

    def get_maintenance_threshold_bps(self) -> int:
        return int(self.get_monitor().get("threshold_bps", 9000))

    def get_watch_margin_bps(self) -> int:
        return int(self.get_monitor().get("watch_margin_bps", 500))

    def get_confirm_timeout_s(self) -> float:
        return float(self.get_monitor().get("confirm_timeout_s", 30))

    def get_position_scope(self) -> str:
        return str(self.get_monitor().get("scope", "own")).lower()

    def get_spread_history_size(self) -> int:
        return int(self.config.get("SPREAD_HISTORY_SIZE", 300))

    def get_logging(self) -> Dict[str, Any]:
        return self.config.get("LOGGING") or {}

    def get_metrics_log_interval_s(self) -> float:
        return float(self.config.get("METRICS_LOG_INTERVAL_S", 60))
