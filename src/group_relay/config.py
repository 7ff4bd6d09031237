from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Final

from yaml import YAMLError, safe_load

from .dedup import DEFAULT_MAX_KEYS, DEFAULT_TRIM_BATCH
from .errors import ConfigInvalid
from .routing import FanOutPolicy
from .utils import resolve_timezone

DEFAULT_STATE_FILE: Final[Path] = Path("processed_messages.json")
DEFAULT_GATEWAY_URL: Final = "http://127.0.0.1:3000"
DEFAULT_SERVER_HOST: Final = "0.0.0.0"
DEFAULT_SERVER_PORT: Final = 8080
DEFAULT_SHUTDOWN_GRACE: Final = 10.0
_ALLOWED_BACKENDS: Final = ("json", "sqlite", "memory")

__all__ = [
    "DEFAULT_STATE_FILE",
    "DedupSettings",
    "GatewaySettings",
    "RelayConfig",
    "RoutingSettings",
    "ServerSettings",
]


@dataclass(frozen=True, slots=True)
class RoutingSettings:
    fan_out: FanOutPolicy = FanOutPolicy.ALL
    timezone: str = "UTC"


@dataclass(frozen=True, slots=True)
class DedupSettings:
    backend: str = "json"
    state_file: Path = DEFAULT_STATE_FILE
    max_keys: int = DEFAULT_MAX_KEYS
    trim_batch: int = DEFAULT_TRIM_BATCH


@dataclass(frozen=True, slots=True)
class GatewaySettings:
    base_url: str = DEFAULT_GATEWAY_URL
    token: str | None = None
    timeout_seconds: float = 30.0
    retry_attempts: int = 3


@dataclass(frozen=True, slots=True)
class ServerSettings:
    host: str = DEFAULT_SERVER_HOST
    port: int = DEFAULT_SERVER_PORT
    webhook_secret: str | None = None


@dataclass(frozen=True, slots=True)
class RelayConfig:
    """Configuration for the pattern-based group relay."""

    rules: Sequence[Mapping[str, Any]]
    routing: RoutingSettings = field(default_factory=RoutingSettings)
    dedup: DedupSettings = field(default_factory=DedupSettings)
    gateway: GatewaySettings = field(default_factory=GatewaySettings)
    server: ServerSettings = field(default_factory=ServerSettings)
    shutdown_grace_seconds: float = DEFAULT_SHUTDOWN_GRACE

    def __post_init__(self) -> None:
        object.__setattr__(self, "rules", tuple(self.rules))

    @classmethod
    def from_file(cls, path: Path) -> RelayConfig:
        path = path.expanduser()
        data = _load_yaml(path)
        return cls.from_mapping(data, base_dir=path.resolve().parent)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], *, base_dir: Path) -> RelayConfig:
        raw_rules = data.get("rules")
        if raw_rules is None:
            raise ConfigInvalid("Missing required configuration key: rules")
        if not isinstance(raw_rules, list):
            raise ConfigInvalid("Configuration field 'rules' must be a list")

        try:
            return cls(
                rules=tuple(raw_rules),
                routing=_parse_routing(_section(data, "routing")),
                dedup=_parse_dedup(_section(data, "dedup"), base_dir),
                gateway=_parse_gateway(_section(data, "gateway")),
                server=_parse_server(_section(data, "server")),
                shutdown_grace_seconds=_non_negative_float(
                    data.get("shutdown_grace_seconds", DEFAULT_SHUTDOWN_GRACE),
                    "shutdown_grace_seconds",
                ),
            )
        except ConfigInvalid:
            raise
        except (TypeError, ValueError) as exc:
            raise ConfigInvalid(str(exc)) from exc


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigInvalid(f"Configuration file not found: {path}")

    try:
        with path.open("r", encoding="utf-8") as file:
            data = safe_load(file) or {}
    except YAMLError as exc:
        raise ConfigInvalid(f"Configuration file {path} is not valid YAML/JSON: {exc}") from exc
    except OSError as exc:
        raise ConfigInvalid(f"Configuration file {path} cannot be read: {exc}") from exc

    if not isinstance(data, Mapping):
        raise ConfigInvalid("Configuration file must contain a mapping at the top level")
    return dict(data)


def _section(data: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    raw = data.get(name)
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise ConfigInvalid(f"Configuration field '{name}' must be a mapping if provided")
    return raw


def _parse_routing(raw: Mapping[str, Any]) -> RoutingSettings:
    fan_out_raw = str(raw.get("fan_out", FanOutPolicy.ALL.value)).strip().lower()
    try:
        fan_out = FanOutPolicy(fan_out_raw)
    except ValueError as exc:
        allowed = ", ".join(policy.value for policy in FanOutPolicy)
        raise ConfigInvalid(
            f"Configuration field 'routing.fan_out' must be one of: {allowed}"
        ) from exc

    zone = str(raw.get("timezone") or "UTC").strip()
    try:
        resolve_timezone(zone)
    except ValueError as exc:
        raise ConfigInvalid(f"Configuration field 'routing.timezone': {exc}") from exc
    return RoutingSettings(fan_out=fan_out, timezone=zone)


def _parse_dedup(raw: Mapping[str, Any], base_dir: Path) -> DedupSettings:
    backend = str(raw.get("backend", "json")).strip().lower()
    if backend not in _ALLOWED_BACKENDS:
        allowed = ", ".join(_ALLOWED_BACKENDS)
        raise ConfigInvalid(f"Configuration field 'dedup.backend' must be one of: {allowed}")

    max_keys = int(raw.get("max_keys", DEFAULT_MAX_KEYS))
    trim_batch = int(raw.get("trim_batch", DEFAULT_TRIM_BATCH))
    if max_keys <= 0:
        raise ConfigInvalid("Configuration field 'dedup.max_keys' must be positive")
    if not 0 <= trim_batch < max_keys:
        raise ConfigInvalid(
            "Configuration field 'dedup.trim_batch' must be at least 0 and below 'max_keys'"
        )

    default_file = DEFAULT_STATE_FILE
    if backend == "sqlite":
        default_file = DEFAULT_STATE_FILE.with_suffix(".sqlite")
    state_file = _resolve_state_file(base_dir, raw.get("state_file"), default_file)
    return DedupSettings(
        backend=backend,
        state_file=state_file,
        max_keys=max_keys,
        trim_batch=trim_batch,
    )


def _parse_gateway(raw: Mapping[str, Any]) -> GatewaySettings:
    base_url = str(raw.get("base_url") or DEFAULT_GATEWAY_URL).strip()
    if not base_url.startswith(("http://", "https://")):
        raise ConfigInvalid("Configuration field 'gateway.base_url' must be an http(s) URL")
    token_raw = raw.get("token")
    token = str(token_raw).strip() if token_raw is not None else None
    retry_attempts = int(raw.get("retry_attempts", 3))
    if retry_attempts < 0:
        raise ConfigInvalid("Configuration field 'gateway.retry_attempts' cannot be negative")
    timeout = _non_negative_float(raw.get("timeout_seconds", 30.0), "gateway.timeout_seconds")
    return GatewaySettings(
        base_url=base_url,
        token=token or None,
        timeout_seconds=timeout,
        retry_attempts=retry_attempts,
    )


def _parse_server(raw: Mapping[str, Any]) -> ServerSettings:
    host = str(raw.get("host") or DEFAULT_SERVER_HOST).strip()
    port = int(raw.get("port", DEFAULT_SERVER_PORT))
    if not 0 <= port <= 65535:
        raise ConfigInvalid("Configuration field 'server.port' must be between 0 and 65535")
    secret_raw = raw.get("webhook_secret")
    secret = str(secret_raw).strip() if secret_raw is not None else None
    return ServerSettings(host=host, port=port, webhook_secret=secret or None)


def _non_negative_float(value: object, field_name: str) -> float:
    number = float(value)  # type: ignore[arg-type]
    if number < 0:
        raise ConfigInvalid(f"Configuration field '{field_name}' cannot be negative")
    return number


def _resolve_state_file(base_dir: Path, raw_value: object, default: Path) -> Path:
    candidate = Path(str(raw_value)).expanduser() if raw_value else default.expanduser()
    if not candidate.is_absolute():
        candidate = (base_dir / candidate).resolve()
    return candidate
