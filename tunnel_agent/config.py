"""Configuration management for Tunnel Agent."""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from decouple import config as env_config

DEFAULT_DOMAIN = "grafana.net"
DEFAULT_KEY_FILE = "~/.ssh/grafana-pdc-agent"

CERT_FILE_SUFFIX = "-cert.pub"
PUBLIC_KEY_SUFFIX = ".pub"
KNOWN_HOSTS_SUFFIX = "_known_hosts"

LOG_LEVELS = ("debug", "info", "warn", "error")

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


class ConfigError(Exception):
    """Raised when configuration values are invalid."""
    pass


def parse_duration(value: str) -> float:
    """Parse a Go-style duration string into seconds.

    Accepts values such as "5m", "1m30s", "250ms" or "0".

    Raises:
        ConfigError: If the value is not a valid duration
    """
    text = str(value).strip()
    if not text:
        raise ConfigError("empty duration")

    sign = 1.0
    if text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]

    if text == "0":
        return 0.0

    total = 0.0
    pos = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()

    if pos == 0 or pos != len(text):
        raise ConfigError(f"invalid duration: {value!r}")

    return sign * total


def log_level_to_ssh_log_level(level: str) -> int:
    """Map an agent log level to the ssh verbosity level.

    Raises:
        ConfigError: On an unknown log level
    """
    if level in ("error", "warn", "info"):
        return 0
    if level == "debug":
        return 3
    raise ConfigError(f"invalid log level: {level}")


def _parse_bool(value: str) -> Optional[bool]:
    # 1, t, true, 0, f, false in any case
    lowered = value.strip().lower()
    if lowered in ("1", "t", "true"):
        return True
    if lowered in ("0", "f", "false"):
        return False
    return None


@dataclass(slots=True)
class AgentConfig:
    """Tunnel Agent configuration.

    Assembled once at startup from flags, environment and an optional YAML
    file, then handed to each component. Durations are in seconds.
    """

    # Cluster selection
    cluster: str = ""
    domain: str = DEFAULT_DOMAIN

    # Signing API identity
    tenant_id: str = ""
    token: str = ""
    sign_public_key_endpoint: str = "/pdc/api/v1/sign-public-key"
    sign_timeout: float = 30.0
    sign_retries: int = 3
    extra_headers: Dict[str, str] = field(default_factory=dict)

    # Explicit endpoint overrides
    api_url_override: Optional[str] = None
    gateway_host_override: Optional[str] = None

    # Key material
    key_file: str = DEFAULT_KEY_FILE
    force_key_file_overwrite: bool = False

    # Certificate rotation
    cert_expiry_window: float = 300.0
    cert_check_expiry_period: float = 60.0

    # ssh process
    ssh_binary: str = "ssh"
    port: int = 22
    skip_ssh_validation: bool = False
    ssh_flags: List[str] = field(default_factory=list)
    ssh_log_level: int = -1  # derived from log_level when unset
    legacy_args: List[str] = field(default_factory=list)

    # Supervision
    restart_backoff_initial: float = 1.0
    restart_backoff_max: float = 60.0
    restart_backoff_reset: float = 60.0
    terminate_timeout: float = 10.0

    # Development mode
    dev_mode: bool = False
    dev_port: int = 9090
    dev_network: str = ""

    # Metrics
    metrics_addr: str = ":8090"

    # Logging
    log_level: str = "info"

    @property
    def key_path(self) -> Path:
        """Private key location with ~ expanded."""
        return Path(os.path.expanduser(self.key_file))

    @property
    def public_key_path(self) -> Path:
        return self.key_path.with_name(self.key_path.name + PUBLIC_KEY_SUFFIX)

    @property
    def cert_path(self) -> Path:
        return self.key_path.with_name(self.key_path.name + CERT_FILE_SUFFIX)

    @property
    def known_hosts_path(self) -> Path:
        return self.key_path.with_name(self.key_path.name + KNOWN_HOSTS_SUFFIX)

    @property
    def api_url(self) -> str:
        """Base URL of the signing API."""
        if self.api_url_override:
            return self.api_url_override
        if self.dev_mode:
            return f"http://{self.domain}:{self.dev_port}"
        return f"https://private-datasource-connect-api-{self.cluster}.{self.domain}"

    @property
    def gateway_host(self) -> str:
        """Host name of the ssh gateway."""
        if self.gateway_host_override:
            return self.gateway_host_override
        if self.dev_mode:
            return self.domain
        return f"private-datasource-connect-{self.cluster}.{self.domain}"

    @property
    def legacy_mode(self) -> bool:
        return bool(self.legacy_args)

    def apply_dev_mode(self) -> None:
        """Point the agent at a locally running gateway and signing API."""
        self.dev_mode = True
        self.sign_public_key_endpoint = "/api/v1/sign-public-key"
        self.extra_headers = {
            "X-Scope-OrgID": self.tenant_id,
            "X-Access-Policy-ID": self.dev_network,
        }
        self.port = self.dev_port

    def apply_env_fallback(self) -> None:
        """Fill empty values from GCLOUD_* environment variables.

        Flags always win; the environment only fills what is still unset.
        Unparsable booleans are ignored.

        Raises:
            ConfigError: On an invalid duration
        """
        if not self.cluster:
            self.cluster = env_config("GCLOUD_PDC_CLUSTER", default="")

        if not self.token:
            self.token = env_config("GCLOUD_PDC_SIGNING_TOKEN", default="")

        if not self.tenant_id:
            self.tenant_id = env_config("GCLOUD_HOSTED_GRAFANA_ID", default="")

        if not self.key_file:
            self.key_file = env_config("GCLOUD_SSH_KEY_FILE", default="")

        ssh_log_level = env_config("GCLOUD_SSH_LOG_LEVEL", default="")
        if ssh_log_level.isdigit() and not 0 <= self.ssh_log_level <= 3:
            self.ssh_log_level = min(int(ssh_log_level), 3)

        skip = _parse_bool(env_config("GCLOUD_SSH_SKIP_SSH_VALIDATION", default=""))
        if skip is not None and not self.skip_ssh_validation:
            self.skip_ssh_validation = skip

        # Appended, since the flag may also be given more than once
        additional = env_config("GCLOUD_SSH_ADDITIONAL_SSHFLAGS", default="")
        if additional:
            self.ssh_flags.extend(additional.split(" "))

        force = _parse_bool(env_config("GCLOUD_SSH_FORCE_KEY_FILE_OVERWRITE", default=""))
        if force is not None and not self.force_key_file_overwrite:
            self.force_key_file_overwrite = force

        window = env_config("GCLOUD_SSH_CERT_EXPIRY_WINDOW", default="")
        if window and self.cert_expiry_window is None:
            self.cert_expiry_window = parse_duration(window)

        period = env_config("GCLOUD_SSH_CERT_CHECK_EXPIRY_PERIOD", default="")
        if period and self.cert_check_expiry_period is None:
            self.cert_check_expiry_period = parse_duration(period)

        if not self.metrics_addr:
            self.metrics_addr = env_config("GCLOUD_SSH_METRICS_ADDR", default="")

    def resolve_ssh_log_level(self) -> None:
        """Derive the ssh verbosity from log_level unless set explicitly.

        Raises:
            ConfigError: On an unknown log level
        """
        if not 0 <= self.ssh_log_level <= 3:
            self.ssh_log_level = log_level_to_ssh_log_level(self.log_level)

    @classmethod
    def unset(cls) -> "AgentConfig":
        """Config with the env-overridable values left empty."""
        return cls(
            key_file="",
            cert_expiry_window=None,
            cert_check_expiry_period=None,
            metrics_addr="",
        )

    def fill_defaults(self) -> None:
        """Replace values still empty after flags and environment."""
        defaults = type(self)()
        if not self.key_file:
            self.key_file = defaults.key_file
        if self.cert_expiry_window is None:
            self.cert_expiry_window = defaults.cert_expiry_window
        if self.cert_check_expiry_period is None:
            self.cert_check_expiry_period = defaults.cert_check_expiry_period
        if not self.metrics_addr:
            self.metrics_addr = defaults.metrics_addr

    def load_file(self, config_file: str) -> None:
        """Apply values from a YAML file.

        Duration values may be numbers (seconds) or duration strings.

        Raises:
            ConfigError: Missing file, invalid YAML, unknown keys or a value
                of the wrong type
        """
        path = Path(config_file)
        if not path.exists():
            raise ConfigError(f"config file not found: {config_file}")

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"invalid config file {config_file}: {e}")

        if not isinstance(data, dict):
            raise ConfigError(f"invalid config file {config_file}: expected a mapping")

        known = set(self.__dataclass_fields__)
        for key, value in data.items():
            if key not in known:
                raise ConfigError(f"unknown config key: {key}")
            setattr(self, key, _coerce_file_value(key, value))

    @classmethod
    def from_env(cls) -> "AgentConfig":
        """Load configuration from environment variables."""
        cfg = cls.unset()
        cfg.apply_env_fallback()
        cfg.fill_defaults()
        cfg.resolve_ssh_log_level()
        return cfg

    @classmethod
    def from_file(cls, config_file: str) -> "AgentConfig":
        """Load configuration from YAML file, environment filling the gaps."""
        cfg = cls.unset()
        cfg.load_file(config_file)
        cfg.apply_env_fallback()
        cfg.fill_defaults()
        cfg.resolve_ssh_log_level()
        return cfg

    def validate(self) -> None:
        """Check values the core depends on.

        Raises:
            ConfigError: On the first invalid value
        """
        if self.log_level not in LOG_LEVELS:
            raise ConfigError(f"invalid log level: {self.log_level}")

        if not 0 <= self.ssh_log_level <= 3:
            raise ConfigError(f"invalid ssh log level: {self.ssh_log_level}")

        for name in _DURATION_FIELDS:
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must not be negative")

        if self.cert_check_expiry_period <= 0:
            raise ConfigError("cert_check_expiry_period must be positive")

        if self.restart_backoff_max < self.restart_backoff_initial:
            raise ConfigError("restart_backoff_max must be >= restart_backoff_initial")

        if not 0 < self.port < 65536:
            raise ConfigError(f"invalid port: {self.port}")

        if not self.key_file:
            raise ConfigError("key file path is required")

        if self.legacy_mode:
            return

        if not self.cluster and not (self.api_url_override and self.gateway_host_override):
            if not self.dev_mode:
                raise ConfigError("cluster is required")

        if not self.tenant_id:
            raise ConfigError("hosted grafana id is required")

        if not self.token and not self.dev_mode:
            raise ConfigError("signing token is required")

    def ensure_directories(self) -> None:
        """Ensure the key directory exists."""
        self.key_path.parent.mkdir(parents=True, exist_ok=True)


_DURATION_FIELDS = (
    "cert_expiry_window",
    "cert_check_expiry_period",
    "sign_timeout",
    "restart_backoff_initial",
    "restart_backoff_max",
    "restart_backoff_reset",
    "terminate_timeout",
)

_INT_FIELDS = ("port", "sign_retries", "ssh_log_level", "dev_port")
_BOOL_FIELDS = ("force_key_file_overwrite", "skip_ssh_validation", "dev_mode")
_LIST_FIELDS = ("ssh_flags", "legacy_args")
_OPTIONAL_FIELDS = ("api_url_override", "gateway_host_override")


def _coerce_file_value(key: str, value):
    """Convert a YAML value to the type of the field it sets.

    Raises:
        ConfigError: If the value cannot be used for the field
    """
    if key in _DURATION_FIELDS:
        if isinstance(value, str):
            return parse_duration(value)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
        raise ConfigError(f"{key}: expected a duration, got {value!r}")

    if key in _INT_FIELDS:
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lstrip("-").isdigit():
            return int(value)
        raise ConfigError(f"{key}: expected an integer, got {value!r}")

    if key in _BOOL_FIELDS:
        if isinstance(value, bool):
            return value
        parsed = _parse_bool(value) if isinstance(value, str) else None
        if parsed is None:
            raise ConfigError(f"{key}: expected a boolean, got {value!r}")
        return parsed

    if key in _LIST_FIELDS:
        if not isinstance(value, list) or not all(isinstance(v, (str, int, float)) for v in value):
            raise ConfigError(f"{key}: expected a list of strings, got {value!r}")
        return [str(v) for v in value]

    if key == "extra_headers":
        if not isinstance(value, dict):
            raise ConfigError(f"{key}: expected a mapping, got {value!r}")
        return {str(k): str(v) for k, v in value.items()}

    if value is None and key in _OPTIONAL_FIELDS:
        return None

    # Numbers are allowed for string fields, e.g. a numeric tenant id
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    raise ConfigError(f"{key}: expected a string, got {value!r}")
