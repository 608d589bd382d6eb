"""
core/initialization.py
----------------------
Loads configuration from .env, builds the stream descriptors and wires all
runtime components with simple dependency-injection (DI) overrides.
"""

from __future__ import annotations

import functools
import importlib
import logging
import os
from typing import Dict, List, Optional

from dotenv import load_dotenv

from core.instruction_handler import INSTRUCTION_TOPIC, handle_instruction
from models.snapshot import StreamDescriptor
from modules.addresses import ProgramAddresses
from modules.backoff import BackoffController
from modules.instruction_sender import InstructionSender
from modules.ledger_reader import LedgerReader
from modules.ledger_rpc import LedgerRpcClient
from modules.liquidation_monitor import LiquidationMonitor
from modules.snapshot_cache import SnapshotCache
from modules.spread_history import SpreadHistory
from modules.sync_engine import HOLDINGS, MARKET, POSITION, SyncEngine
from utils.config_manager import DEFAULT_RPC_URL, DEFAULT_STREAMS, ConfigManager
from utils.config_validator import validate_config
from utils.event_bus import EventBus
from utils.logger import DEFAULT_LOGGING, setup_logger
from utils.signing import Signer

# streams the liquidation monitor evaluates; polled at least once per monitor tick
MONITORED_STREAMS = (POSITION, MARKET)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    return int(raw) if raw.strip() else default


def load_configuration(env_path: str = "config.env") -> Dict:
    """
    Load settings from an .env-style file and return a structured config dict.
    """
    log = logging.getLogger(__name__)
    load_dotenv(dotenv_path=env_path)

    # STREAM_<KEY>_INTERVAL_MS / STREAM_<KEY>_TTL_MS override the defaults
    streams: Dict[str, Dict[str, int]] = {}
    for key, defaults in DEFAULT_STREAMS.items():
        prefix = f"STREAM_{key.upper()}_"
        streams[key] = {
            "interval_ms": _env_int(prefix + "INTERVAL_MS", defaults["interval_ms"]),
            "ttl_ms": _env_int(prefix + "TTL_MS", defaults["ttl_ms"]),
        }
    log.debug("Stream policies: %s", streams)

    conf: Dict[str, object] = {
        "RPC": {
            "url": os.getenv("RPC_URL", DEFAULT_RPC_URL),
            "commitment": os.getenv("RPC_COMMITMENT", "confirmed"),
            "timeout_s": float(os.getenv("RPC_TIMEOUT_S", "10") or 10),
        },
        # every address but program_id and usdc_mint is derived when left empty
        "PROGRAM": {
            "program_id": os.getenv("PROGRAM_ID", ""),
            "usdc_mint": os.getenv("USDC_MINT") or None,
            "market_address": os.getenv("MARKET_ADDRESS") or None,
            "oracle_address": os.getenv("ORACLE_ADDRESS") or None,
            "multi_oracle_address": os.getenv("MULTI_ORACLE_ADDRESS") or None,
            "position_address": os.getenv("POSITION_ADDRESS") or None,
        },
        "WALLET": {
            "identity": os.getenv("WALLET_IDENTITY") or None,
            "signer_factory": os.getenv("SIGNER_FACTORY") or None,
        },
        "STREAMS": streams,
        "BACKOFF": {
            "base_ms": _env_int("BACKOFF_BASE_MS", 1000),
            "max_ms": _env_int("BACKOFF_MAX_MS", 10000),
        },
        "MAX_RATE_LIMIT_RETRIES": _env_int("MAX_RATE_LIMIT_RETRIES", 5),
        "MONITOR": {
            "enabled": os.getenv("MONITOR_ENABLED", "false").strip().lower() in ("1", "true", "yes"),
            "interval_ms": _env_int("MONITOR_INTERVAL_MS", 400),
            "threshold_bps": _env_int("MAINTENANCE_THRESHOLD_BPS", 9000),
            "watch_margin_bps": _env_int("WATCH_MARGIN_BPS", 500),
            "confirm_timeout_s": float(os.getenv("CONFIRM_TIMEOUT_S", "30") or 30),
            "scope": os.getenv("MONITOR_SCOPE", "own").strip().lower(),
        },
        "LOGGING": {
            "level": os.getenv("LOG_LEVEL", DEFAULT_LOGGING["level"]).upper(),
            "file": os.getenv("LOG_FILE", DEFAULT_LOGGING["file"]),
            "max_mb": _env_int("LOG_MAX_MB", DEFAULT_LOGGING["max_mb"]),
            "backups": _env_int("LOG_BACKUPS", DEFAULT_LOGGING["backups"]),
        },
        "SPREAD_HISTORY_SIZE": _env_int("SPREAD_HISTORY_SIZE", 300),
        "METRICS_LOG_INTERVAL_S": float(os.getenv("METRICS_LOG_INTERVAL_S", "60") or 60),
    }

    log.debug("Parsed PROGRAM: %s", conf["PROGRAM"])
    return conf


def load_signer(factory_path: str) -> Signer:
    """Import ``package.module:callable`` and call it to obtain the signer."""
    module_name, _, attr = factory_path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"SIGNER_FACTORY must look like 'module:callable', got {factory_path!r}")
    factory = getattr(importlib.import_module(module_name), attr)
    return factory()


def build_addresses(config: ConfigManager) -> ProgramAddresses:
    program = config.get_program()
    return ProgramAddresses.derive(
        config.get_program_id(),
        market=program.get("market_address"),
        oracle=program.get("oracle_address"),
        multi_oracle=program.get("multi_oracle_address"),
        usdc_mint=config.get_usdc_mint(),
    )


def build_descriptors(
    config: ConfigManager,
    reader: LedgerReader,
    monitor_interval_ms: Optional[int] = None,
) -> List[StreamDescriptor]:
    """
    One descriptor per stream. With ``monitor_interval_ms`` set, the streams
    the monitor evaluates are polled (and expire) at least that often, so each
    monitor tick sees a snapshot at most one tick old.
    """
    fetchers = {
        POSITION: reader.fetch_positions,
        MARKET: reader.fetch_market,
        HOLDINGS: reader.fetch_holdings,
    }
    descriptors = []
    for key, fetch_fn in fetchers.items():
        policy = config.get_stream_policy(key)
        interval_ms, ttl_ms = policy["interval_ms"], policy["ttl_ms"]
        if monitor_interval_ms and key in MONITORED_STREAMS:
            interval_ms = min(interval_ms, monitor_interval_ms)
            ttl_ms = min(ttl_ms, monitor_interval_ms)
        descriptors.append(
            StreamDescriptor(key=key, interval_ms=interval_ms, ttl_ms=ttl_ms, fetch_fn=fetch_fn)
        )
    return descriptors


def initialize_components(
    config: Dict,
    overrides: Optional[Dict[str, object]] = None,
    logger: Optional[logging.Logger] = None,
) -> Dict[str, object]:
    """
    Construct and wire together all runtime components (supports DI via overrides).

    Keys you can override:
    {"logger", "rpc", "signer", "reader", "cache", "backoff", "bus", "sender", "monitor"}
    """
    overrides = overrides or {}
    validate_config(config)
    cfg = ConfigManager(config)

    # 1) Logger
    logger = overrides.get("logger") or logger or setup_logger("LedgerSync", cfg.get_logging())

    # 2) RPC client
    rpc = overrides.get("rpc") or LedgerRpcClient(
        cfg.get_rpc_url(),
        commitment=cfg.get_commitment(),
        timeout_s=cfg.get_request_timeout(),
        logger=logger.getChild("rpc"),
    )

    # 3) Signer – optional, read-only without one
    signer = overrides.get("signer")
    wallet = cfg.get("WALLET", {}) or {}
    if signer is None and wallet.get("signer_factory"):
        signer = load_signer(wallet["signer_factory"])
    identity = getattr(signer, "identity", None) or wallet.get("identity")

    # 4) Addresses + reader
    addresses = build_addresses(cfg)
    reader = overrides.get("reader") or LedgerReader(
        rpc,
        addresses,
        identity=identity,
        position_address=cfg.get_program().get("position_address"),
        scope=cfg.get_position_scope(),
        logger=logger.getChild("reader"),
    )

    # 5) Shared state
    cache = overrides.get("cache") or SnapshotCache()
    backoff = overrides.get("backoff") or BackoffController(
        base_ms=cfg.get_backoff_base_ms(), max_ms=cfg.get_backoff_max_ms()
    )
    bus = overrides.get("bus") or EventBus()

    # 6) Instruction sender + monitor – both need a signer
    sender = overrides.get("sender")
    if sender is None and signer is not None:
        sender = InstructionSender(
            rpc,
            signer,
            addresses,
            confirm_timeout_s=cfg.get_confirm_timeout_s(),
            logger=logger.getChild("sender"),
        )

    monitor = overrides.get("monitor")
    if monitor is None and cfg.is_monitor_enabled():
        if sender is None:
            logger.warning("MONITOR_ENABLED set but no signer available – monitor disabled")
        else:
            monitor = LiquidationMonitor(
                cache,
                sender.liquidate,
                interval_ms=cfg.get_monitor_interval_ms(),
                threshold_bps=cfg.get_maintenance_threshold_bps(),
                watch_margin_bps=cfg.get_watch_margin_bps(),
                logger=logger.getChild("monitor"),
            )

    # 7) Engine
    monitor_interval_ms = monitor.interval_ms if monitor is not None else None
    engine = SyncEngine(
        build_descriptors(cfg, reader, monitor_interval_ms),
        cache=cache,
        backoff=backoff,
        bus=bus,
        sender=sender,
        monitor=monitor,
        spread_history=SpreadHistory(maxlen=cfg.get_spread_history_size()),
        rpc=rpc,
        own_position=reader.own_position_address() if isinstance(reader, LedgerReader) else None,
        max_rate_limit_retries=cfg.get_max_rate_limit_retries(),
        metrics_log_interval_s=cfg.get_metrics_log_interval_s(),
        logger=logger.getChild("engine"),
    )

    # 8) View commands
    bus.subscribe(INSTRUCTION_TOPIC, functools.partial(handle_instruction, engine=engine))

    logger.info("✅ Logger initialized.")
    logger.info("✅ RPC client initialized: %s", cfg.get_rpc_url())
    logger.info("✅ Market %s, oracle %s", addresses.market, addresses.oracle)
    logger.info("✅ Signer: %s", identity or "none (read-only)")
    if monitor is not None:
        logger.info(
            "✅ Liquidation monitor on – %s streams polled every %d ms",
            "/".join(MONITORED_STREAMS), monitor_interval_ms,
        )
    else:
        logger.info("✅ Liquidation monitor: off")

    return {
        "logger": logger,
        "rpc": rpc,
        "signer": signer,
        "addresses": addresses,
        "reader": reader,
        "cache": cache,
        "backoff": backoff,
        "bus": bus,
        "sender": sender,
        "monitor": monitor,
        "engine": engine,
    }
