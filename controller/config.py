from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

from controller.errors import ConfigError


_TRUE_WORDS = frozenset({"1", "true", "yes", "y", "on"})


def as_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value if value is not None else "").strip().lower() in _TRUE_WORDS


def _as_number(value: Any, cast: Callable[[Any], Any], default: Any, floor: Any) -> Any:
    """Cast `value`, falling back to `default` when unset or unparsable, then clamp to `floor`."""
    try:
        number = cast(value)
    except (TypeError, ValueError, OverflowError):
        number = cast(default)
    if number != number:  # NaN
        number = cast(default)
    if floor is not None and number < floor:
        number = cast(floor)
    return number


def as_int(value: Any, *, default: int, floor: Optional[int] = None) -> int:
    return _as_number(value, int, default, floor)


def as_float(value: Any, *, default: float, floor: Optional[float] = None) -> float:
    return _as_number(value, float, default, floor)


def _as_non_empty_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        value = str(value)
    value = value.strip()
    return value or None


def _read_json(path: Path) -> Dict[str, Any]:
    try:
        raw = path.read_text()
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}")
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise ConfigError(f"Config file {path} is not valid JSON: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    return data


@dataclass(frozen=True)
class DaemonEndpoint:
    host: str
    port: int
    username: str
    password: str
    timeout: float = 10.0
    production_timeout: float = 120.0
    wallet: Optional[str] = None

    @property
    def url(self) -> str:
        base = f"http://{self.host}:{int(self.port)}"
        if self.wallet:
            return f"{base}/wallet/{self.wallet}"
        return base

    def __repr__(self) -> str:
        # Keep the password out of logs.
        return (
            f"DaemonEndpoint(host={self.host!r}, port={self.port}, username={self.username!r}, "
            f"timeout={self.timeout}, production_timeout={self.production_timeout}, wallet={self.wallet!r})"
        )


@dataclass(frozen=True)
class ControllerConfig:
    daemon: DaemonEndpoint

    poll_interval: float = 2.0
    queue_depth: int = 16
    max_blocks_per_request: int = 1000
    miner_address: Optional[str] = None

    # Scheduled production; 0 disables.
    block_time: float = 0.0
    bootstrap_height: int = 0

    min_ready_height: int = 0
    max_header_lag: int = 0
    respect_ibd: bool = False

    rpc_max_attempts: int = 5
    rpc_backoff_base: float = 0.25
    rpc_backoff_max: float = 5.0

    result_timeout: float = 300.0

    notify_url: Optional[str] = None
    notify_timeout: float = 5.0
    notify_max_attempts: int = 3
    notify_queue_size: int = 256

    bind_host: str = "127.0.0.1"
    bind_port: int = 3000

    source_path: Optional[Path] = None


# config key -> environment variable
_ENV_KEYS: Dict[str, str] = {
    "rpc_host": "CONTROLLER_RPC_HOST",
    "rpc_port": "CONTROLLER_RPC_PORT",
    "rpc_username": "CONTROLLER_RPC_USERNAME",
    "rpc_password": "CONTROLLER_RPC_PASSWORD",
    "rpc_timeout": "CONTROLLER_RPC_TIMEOUT",
    "rpc_wallet": "CONTROLLER_RPC_WALLET",
    "production_timeout": "CONTROLLER_PRODUCTION_TIMEOUT",
    "poll_interval": "CONTROLLER_POLL_INTERVAL",
    "queue_depth": "CONTROLLER_QUEUE_DEPTH",
    "max_blocks_per_request": "CONTROLLER_MAX_BLOCKS_PER_REQUEST",
    "miner_address": "CONTROLLER_MINER_ADDRESS",
    "block_time": "CONTROLLER_BLOCK_TIME",
    "bootstrap_height": "CONTROLLER_BOOTSTRAP_HEIGHT",
    "min_ready_height": "CONTROLLER_MIN_READY_HEIGHT",
    "max_header_lag": "CONTROLLER_MAX_HEADER_LAG",
    "respect_ibd": "CONTROLLER_RESPECT_IBD",
    "rpc_max_attempts": "CONTROLLER_RPC_MAX_ATTEMPTS",
    "rpc_backoff_base": "CONTROLLER_RPC_BACKOFF_BASE",
    "rpc_backoff_max": "CONTROLLER_RPC_BACKOFF_MAX",
    "result_timeout": "CONTROLLER_RESULT_TIMEOUT",
    "notify_url": "CONTROLLER_NOTIFY_URL",
    "notify_timeout": "CONTROLLER_NOTIFY_TIMEOUT",
    "notify_max_attempts": "CONTROLLER_NOTIFY_MAX_ATTEMPTS",
    "notify_queue_size": "CONTROLLER_NOTIFY_QUEUE_SIZE",
    "bind_host": "CONTROLLER_BIND_HOST",
    "bind_port": "CONTROLLER_BIND_PORT",
}


def _default_config_path(env: Mapping[str, str]) -> Optional[Path]:
    raw = env.get("CONTROLLER_CONFIG_PATH")
    if not raw:
        return None
    return Path(raw).expanduser().resolve()


def load_config(
    path: str | Path | None = None,
    *,
    env: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> ControllerConfig:
    """
    Build the controller configuration.

    Precedence, lowest first: defaults, JSON file, CONTROLLER_* environment
    variables, explicit overrides (CLI flags). Keys use the flat names listed
    in _ENV_KEYS.
    """
    env = os.environ if env is None else env
    source = Path(path).expanduser().resolve() if path else _default_config_path(env)

    data: Dict[str, Any] = _read_json(source) if source else {}

    for key, env_name in _ENV_KEYS.items():
        raw = env.get(env_name)
        if raw is not None and str(raw).strip() != "":
            data[key] = raw

    for key, value in (overrides or {}).items():
        if value is not None:
            data[key] = value

    unknown = sorted(k for k in data if k not in _ENV_KEYS)
    if unknown:
        raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")

    username = _as_non_empty_str(data.get("rpc_username"))
    password = _as_non_empty_str(data.get("rpc_password"))
    if not username or not password:
        raise ConfigError(
            "RPC credentials are required (rpc_username/rpc_password or "
            "CONTROLLER_RPC_USERNAME/CONTROLLER_RPC_PASSWORD)"
        )

    defaults = ControllerConfig(daemon=DaemonEndpoint(host="", port=0, username="", password=""))

    daemon = DaemonEndpoint(
        host=_as_non_empty_str(data.get("rpc_host")) or "127.0.0.1",
        port=as_int(data.get("rpc_port"), default=18443, floor=1),
        username=username,
        password=password,
        timeout=as_float(data.get("rpc_timeout"), default=defaults.daemon.timeout, floor=0.1),
        production_timeout=as_float(
            data.get("production_timeout"), default=defaults.daemon.production_timeout, floor=0.1
        ),
        wallet=_as_non_empty_str(data.get("rpc_wallet")),
    )

    return ControllerConfig(
        daemon=daemon,
        poll_interval=as_float(data.get("poll_interval"), default=defaults.poll_interval, floor=0.05),
        queue_depth=as_int(data.get("queue_depth"), default=defaults.queue_depth, floor=1),
        max_blocks_per_request=as_int(
            data.get("max_blocks_per_request"), default=defaults.max_blocks_per_request, floor=1
        ),
        miner_address=_as_non_empty_str(data.get("miner_address")),
        block_time=as_float(data.get("block_time"), default=defaults.block_time, floor=0.0),
        bootstrap_height=as_int(data.get("bootstrap_height"), default=defaults.bootstrap_height, floor=0),
        min_ready_height=as_int(data.get("min_ready_height"), default=defaults.min_ready_height, floor=0),
        max_header_lag=as_int(data.get("max_header_lag"), default=defaults.max_header_lag, floor=0),
        respect_ibd=as_flag(data.get("respect_ibd", defaults.respect_ibd)),
        rpc_max_attempts=as_int(data.get("rpc_max_attempts"), default=defaults.rpc_max_attempts, floor=1),
        rpc_backoff_base=as_float(data.get("rpc_backoff_base"), default=defaults.rpc_backoff_base, floor=0.0),
        rpc_backoff_max=as_float(data.get("rpc_backoff_max"), default=defaults.rpc_backoff_max, floor=0.0),
        result_timeout=as_float(data.get("result_timeout"), default=defaults.result_timeout, floor=0.1),
        notify_url=_as_non_empty_str(data.get("notify_url")),
        notify_timeout=as_float(data.get("notify_timeout"), default=defaults.notify_timeout, floor=0.1),
        notify_max_attempts=as_int(
            data.get("notify_max_attempts"), default=defaults.notify_max_attempts, floor=1
        ),
        notify_queue_size=as_int(data.get("notify_queue_size"), default=defaults.notify_queue_size, floor=1),
        bind_host=_as_non_empty_str(data.get("bind_host")) or defaults.bind_host,
        bind_port=as_int(data.get("bind_port"), default=defaults.bind_port, floor=0),
        source_path=source,
    )
