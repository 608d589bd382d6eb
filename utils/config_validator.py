from solders.pubkey import Pubkey

STREAM_KEYS = ("position", "market", "holdings")
ADDRESS_KEYS = (
    "program_id",
    "usdc_mint",
    "market_address",
    "oracle_address",
    "multi_oracle_address",
    "position_address",
)


def _check_address(key: str, value: str):
    try:
        Pubkey.from_string(value)
    except ValueError as exc:
        raise ValueError(f"PROGRAM.{key} is not a valid address: {value!r}") from exc


def validate_config(config: dict):
    required_keys = [
        "RPC",
        "PROGRAM",
        "STREAMS",
    ]

    missing = [k for k in required_keys if k not in config or not config[k]]
    if missing:
        raise ValueError(f"Missing required configuration keys: {missing}")

    if not isinstance(config["RPC"], dict) or not config["RPC"].get("url"):
        raise ValueError("RPC.url must be set.")

    program = config["PROGRAM"]
    if not isinstance(program, dict):
        raise TypeError("PROGRAM must be a dictionary.")
    if not program.get("program_id"):
        raise ValueError("PROGRAM.program_id must be set.")
    for key in ADDRESS_KEYS:
        if program.get(key):
            _check_address(key, program[key])

    streams = config["STREAMS"]
    if not isinstance(streams, dict):
        raise TypeError("STREAMS must be a dictionary.")
    for key in STREAM_KEYS:
        policy = streams.get(key)
        if not isinstance(policy, dict):
            raise TypeError(f"STREAMS.{key} must be a dictionary.")
        for field in ("interval_ms", "ttl_ms"):
            value = policy.get(field)
            if not isinstance(value, int) or value <= 0:
                raise ValueError(f"STREAMS.{key}.{field} must be a positive integer.")

    backoff = config.get("BACKOFF", {})
    if backoff and backoff.get("base_ms", 1) > backoff.get("max_ms", 10**9):
        raise ValueError("BACKOFF.base_ms must not exceed BACKOFF.max_ms.")

    monitor = config.get("MONITOR", {})
    if monitor.get("scope", "own") not in ("own", "all"):
        raise ValueError("MONITOR.scope must be 'own' or 'all'.")
    if monitor.get("enabled") and not program.get("usdc_mint"):
        raise ValueError("PROGRAM.usdc_mint must be set when MONITOR.enabled.")
    interval = monitor.get("interval_ms", 400)
    if not isinstance(interval, int) or interval <= 0:
        raise ValueError("MONITOR.interval_ms must be a positive integer.")
