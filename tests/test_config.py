import copy

import pytest
from solders.pubkey import Pubkey

from core.initialization import load_configuration
from utils.config_manager import ConfigManager
from utils.config_validator import validate_config

PROGRAM = str(Pubkey.new_unique())
USDC_MINT = str(Pubkey.new_unique())

# ------------------------- Fixtures ------------------------- #

@pytest.fixture
def config():
    return {
        "RPC": {"url": "http://rpc.test", "commitment": "confirmed", "timeout_s": 5},
        "PROGRAM": {
            "program_id": PROGRAM,
            "usdc_mint": USDC_MINT,
        },
        "STREAMS": {
            "position": {"interval_ms": 400, "ttl_ms": 200},
            "market": {"interval_ms": 400, "ttl_ms": 2000},
            "holdings": {"interval_ms": 5000, "ttl_ms": 2000},
        },
        "BACKOFF": {"base_ms": 1000, "max_ms": 10000},
        "MONITOR": {"enabled": True, "threshold_bps": 8500, "scope": "all"},
    }

# ------------------------- Validation ------------------------- #

def test_valid_config_passes(config):
    validate_config(config)


@pytest.mark.parametrize("key", ["RPC", "PROGRAM", "STREAMS"])
def test_missing_section(config, key):
    del config[key]
    with pytest.raises(ValueError, match="Missing required"):
        validate_config(config)


def test_missing_program_id(config):
    config["PROGRAM"]["program_id"] = ""
    with pytest.raises(ValueError, match="program_id"):
        validate_config(config)


@pytest.mark.parametrize("value", [0, -5, "400", None])
def test_bad_stream_interval(config, value):
    config["STREAMS"]["market"]["interval_ms"] = value
    with pytest.raises(ValueError, match="STREAMS.market.interval_ms"):
        validate_config(config)


def test_missing_stream_policy(config):
    del config["STREAMS"]["holdings"]
    with pytest.raises(TypeError):
        validate_config(config)


def test_backoff_base_above_max(config):
    config["BACKOFF"] = {"base_ms": 20000, "max_ms": 10000}
    with pytest.raises(ValueError, match="BACKOFF"):
        validate_config(config)


def test_bad_scope(config):
    config["MONITOR"]["scope"] = "everyone"
    with pytest.raises(ValueError, match="scope"):
        validate_config(config)


def test_monitor_needs_usdc_mint(config):
    config["PROGRAM"]["usdc_mint"] = None
    with pytest.raises(ValueError, match="usdc_mint"):
        validate_config(config)


def test_read_only_needs_no_usdc_mint(config):
    config["PROGRAM"]["usdc_mint"] = None
    config["MONITOR"]["enabled"] = False
    validate_config(config)


@pytest.mark.parametrize("key", ["program_id", "usdc_mint", "market_address"])
def test_invalid_address(config, key):
    config["PROGRAM"][key] = "not base58 0OIl"
    with pytest.raises(ValueError, match=f"PROGRAM.{key}"):
        validate_config(config)

# ------------------------- ConfigManager ------------------------- #

def test_manager_reads_values_and_defaults(config):
    cfg = ConfigManager(config)
    assert cfg.get_rpc_url() == "http://rpc.test"
    assert cfg.get_request_timeout() == 5.0
    assert cfg.get_stream_policy("position") == {"interval_ms": 400, "ttl_ms": 200}
    assert cfg.is_monitor_enabled() is True
    assert cfg.get_maintenance_threshold_bps() == 8500
    assert cfg.get_position_scope() == "all"
    # defaults
    assert cfg.get_monitor_interval_ms() == 400
    assert cfg.get_watch_margin_bps() == 500
    assert cfg.get_max_rate_limit_retries() == 5
    assert cfg.get_spread_history_size() == 300


def test_manager_fills_partial_stream_policy(config):
    cfg = copy.deepcopy(config)
    cfg["STREAMS"]["market"] = {"interval_ms": 1000}
    assert ConfigManager(cfg).get_stream_policy("market") == {"interval_ms": 1000, "ttl_ms": 2000}

def test_manager_program_and_logging(config):
    config["LOGGING"] = {"level": "DEBUG", "file": ""}
    cfg = ConfigManager(config)
    assert cfg.get_program_id() == PROGRAM
    assert cfg.get_usdc_mint() == USDC_MINT
    assert cfg.get_logging() == {"level": "DEBUG", "file": ""}
    assert ConfigManager({}).get_logging() == {}

# ------------------------- .env loading ------------------------- #

ENV_NAMES = (
    "RPC_URL", "PROGRAM_ID", "USDC_MINT", "MARKET_ADDRESS", "STREAM_MARKET_INTERVAL_MS",
    "MONITOR_ENABLED", "MONITOR_SCOPE", "LOG_LEVEL", "LOG_FILE", "LOG_MAX_MB", "LOG_BACKUPS",
)


def test_load_configuration_from_env_file(tmp_path, monkeypatch):
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    env = tmp_path / "config.env"
    env.write_text(
        "RPC_URL=http://localhost:8899\n"
        f"PROGRAM_ID={PROGRAM}\n"
        f"USDC_MINT={USDC_MINT}\n"
        "STREAM_MARKET_INTERVAL_MS=400\n"
        "MONITOR_ENABLED=true\n"
        "LOG_LEVEL=debug\n"
        "LOG_MAX_MB=2\n"
    )

    conf = load_configuration(str(env))
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)

    assert conf["RPC"]["url"] == "http://localhost:8899"
    assert conf["PROGRAM"]["program_id"] == PROGRAM
    assert conf["PROGRAM"]["usdc_mint"] == USDC_MINT
    assert conf["PROGRAM"]["market_address"] is None
    assert conf["STREAMS"]["market"] == {"interval_ms": 400, "ttl_ms": 2000}
    assert conf["STREAMS"]["position"] == {"interval_ms": 5000, "ttl_ms": 200}
    assert conf["MONITOR"]["enabled"] is True
    assert conf["MONITOR"]["scope"] == "own"
    assert conf["LOGGING"] == {"level": "DEBUG", "file": "logs/sync.log", "max_mb": 2, "backups": 5}
    validate_config(conf)
