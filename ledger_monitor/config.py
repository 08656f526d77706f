"""
Monitor Configuration

Settings come from, in increasing priority:
1. MonitorConfig defaults
2. The `monitor:` section of the YAML config file
3. The `altnet:` section, when running against the test network
4. Environment variables (a .env file is loaded first)

Example file (conf/ledger-monitor.yaml):

    monitor:
      rippled: wss://xrplcluster.com
      addresses: [rEXAMPLE...]
      store: file
      tx_filename_format: "tx/{ledger_version}-{id}.json"
    altnet:
      rippled: wss://s.altnet.rippletest.net:51233
    nicknames:
      rEXAMPLE...: hot wallet
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from .client import ClientConfig, MAINNET_WS_URL
from .errors import ConfigError
from .persistence.delivery_store import check_filename_format


PROJECT_ROOT = Path(__file__).parent.parent
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "conf" / "ledger-monitor.yaml"

STORE_BACKENDS = ("file", "sqlite", "memory")

# Environment variable -> MonitorConfig field
ENV_OVERRIDES = {
    "LEDGER_MONITOR_RIPPLED": "rippled",
    "LEDGER_MONITOR_RPC_URL": "rpc_url",
    "LEDGER_MONITOR_DB_PATH": "db_path",
    "LEDGER_MONITOR_LOG_LEVEL": "log_level",
}


@dataclass
class MonitorConfig:
    """Configuration for the ledger monitor."""

    # ========== Node ==========
    # rippled WebSocket URL (ledger stream and, by default, queries)
    rippled: str = MAINNET_WS_URL

    # Optional JSON-RPC URL; when set, queries go over HTTP
    rpc_url: Optional[str] = None

    request_timeout: float = 20.0
    reconnect_delay: float = 1.0
    max_reconnect_delay: float = 60.0

    # account_tx page size
    page_limit: int = 200

    # ========== Addresses ==========
    addresses: List[str] = field(default_factory=list)

    # address -> nickname, for console output
    nicknames: Dict[str, str] = field(default_factory=dict)

    # ========== Durability ==========
    # "file": one JSON file per delivered tx; "sqlite": delivered_transactions table
    store: str = "file"

    # str.format over transaction fields; must contain {id}
    tx_filename_format: str = "tx/{ledger_version}-{id}.json"

    db_path: str = "data/delivered.db"

    # Cursor checkpoint written after every completed ledger (None = off)
    checkpoint_path: Optional[str] = None

    # ========== Logging ==========
    log_level: str = "INFO"

    def validate(self):
        """Raise ConfigError on invalid settings."""
        if not self.rippled:
            raise ConfigError("rippled URL is required")
        if self.store not in STORE_BACKENDS:
            raise ConfigError(
                f"store must be one of {', '.join(STORE_BACKENDS)}, got {self.store!r}",
                data=self.store
            )
        if self.store == "file":
            check_filename_format(self.tx_filename_format)
        for name in ("request_timeout", "reconnect_delay", "max_reconnect_delay"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        if self.page_limit <= 0:
            raise ConfigError("page_limit must be positive")
        if not isinstance(self.addresses, list) or not all(isinstance(a, str) for a in self.addresses):
            raise ConfigError("addresses must be a list of strings", data=self.addresses)

    def client_config(self) -> ClientConfig:
        return ClientConfig(
            url=self.rippled,
            rpc_url=self.rpc_url,
            request_timeout=self.request_timeout,
            reconnect_delay=self.reconnect_delay,
            max_reconnect_delay=self.max_reconnect_delay,
            page_limit=self.page_limit,
        )

    def format_address(self, address: str) -> str:
        """Show a nickname, if known."""
        nickname = self.nicknames.get(address)
        if nickname:
            return f"{nickname}:{address}"
        return address


def _coerce(name: str, value: Any) -> Any:
    """Convert environment strings to the field's type."""
    if name in ("request_timeout", "reconnect_delay", "max_reconnect_delay"):
        return float(value)
    if name == "page_limit":
        return int(value)
    return value


def build_config(data: Dict[str, Any], altnet: bool = False) -> MonitorConfig:
    """
    Build a MonitorConfig from parsed YAML.

    With altnet=True, keys in the `altnet:` section replace those in
    `monitor:`.
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError("Config file must contain a mapping")

    settings = dict(data.get("monitor") or {})
    if altnet:
        overrides = data.get("altnet")
        if not overrides:
            raise ConfigError("--altnet given but config has no altnet section")
        settings.update(overrides)

    nicknames = dict(data.get("nicknames") or {})
    nicknames.update(settings.pop("nicknames", None) or {})

    known = {f.name for f in fields(MonitorConfig)}
    unknown = set(settings) - known
    if unknown:
        raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}", data=sorted(unknown))

    try:
        for name in ("request_timeout", "reconnect_delay", "max_reconnect_delay", "page_limit"):
            if name in settings:
                settings[name] = _coerce(name, settings[name])
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid numeric setting: {e}")

    config = MonitorConfig(nicknames=nicknames, **settings)
    config.validate()
    return config


def apply_env_overrides(config: MonitorConfig, environ: Optional[Dict[str, str]] = None) -> MonitorConfig:
    environ = os.environ if environ is None else environ
    for var, name in ENV_OVERRIDES.items():
        value = environ.get(var)
        if value:
            setattr(config, name, _coerce(name, value))
    config.validate()
    return config


def load_config(
    path: Optional[str] = None,
    altnet: bool = False,
    env_file: Optional[str] = None
) -> MonitorConfig:
    """
    Load configuration from a YAML file plus environment overrides.

    A missing file is an error only when a path was given explicitly.
    """
    load_dotenv(env_file)

    config_path = Path(path) if path else DEFAULT_CONFIG_PATH
    data: Dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse {config_path}: {e}")
    elif path:
        raise ConfigError(f"Config file not found: {config_path}", data=str(config_path))
    elif altnet:
        raise ConfigError("--altnet needs a config file with an altnet section")

    return apply_env_overrides(build_config(data, altnet=altnet))
