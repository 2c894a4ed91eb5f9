"""Runtime settings for the telemetry bridge (host-supplied, never persisted)."""
from __future__ import annotations

import math
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 10501
DEFAULT_LINGER_SECONDS = 2.0
PAYLOAD_LOG_MAX_BYTES = 512 * 1024

ENV_PREFIX = "DPSBAR_"


@dataclass(frozen=True)
class ConnectionTarget:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT

    @property
    def uri(self) -> str:
        return f"ws://{self.host}:{self.port}/ws"


@dataclass(frozen=True)
class BridgeSettings:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    linger_seconds: float = DEFAULT_LINGER_SECONDS
    shutdown_timeout: Optional[float] = None
    log_payloads: bool = False
    payload_log_dir: Optional[Path] = None
    payload_log_retention: int = 5
    payload_log_max_bytes: int = PAYLOAD_LOG_MAX_BYTES

    @property
    def target(self) -> ConnectionTarget:
        return ConnectionTarget(self.host, self.port)


@dataclass
class OverrideResult:
    applied: list[str] = field(default_factory=list)
    rejected: list[str] = field(default_factory=list)


def _coerce_bool(raw: Any, default: bool) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float)):
        return bool(raw)
    if isinstance(raw, str):
        token = raw.strip().lower()
        if token in {"1", "true", "yes", "on"}:
            return True
        if token in {"0", "false", "no", "off"}:
            return False
    return default


def _coerce_port(raw: Any, default: int) -> int:
    try:
        port = int(raw)
    except (TypeError, ValueError):
        return default
    return max(1, min(port, 65535))


def _coerce_seconds(raw: Any, default: Optional[float]) -> Optional[float]:
    try:
        seconds = float(raw)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(seconds):
        return default
    return max(0.0, seconds)


def _coerce_host(raw: Any, default: str) -> str:
    if raw is None:
        return default
    host = str(raw).strip()
    return host or default


def _coerce_path(raw: Any) -> Optional[Path]:
    if raw in (None, ""):
        return None
    try:
        return Path(str(raw)).expanduser()
    except (TypeError, ValueError, RuntimeError):
        return None


def settings_from_mapping(data: Optional[Mapping[str, Any]]) -> BridgeSettings:
    """Build settings from a host mapping; bad values fall back to defaults."""
    base = BridgeSettings()
    if not isinstance(data, Mapping):
        return base
    shutdown_raw = data.get("shutdown_timeout")
    try:
        retention = max(1, int(data.get("payload_log_retention", base.payload_log_retention)))
    except (TypeError, ValueError):
        retention = base.payload_log_retention
    try:
        max_bytes = max(1024, int(data.get("payload_log_max_bytes", base.payload_log_max_bytes)))
    except (TypeError, ValueError):
        max_bytes = base.payload_log_max_bytes
    return BridgeSettings(
        host=_coerce_host(data.get("host"), base.host),
        port=_coerce_port(data.get("port", base.port), base.port),
        linger_seconds=_coerce_seconds(data.get("linger_seconds", base.linger_seconds), base.linger_seconds),
        shutdown_timeout=None if shutdown_raw is None else _coerce_seconds(shutdown_raw, None),
        log_payloads=_coerce_bool(data.get("log_payloads"), base.log_payloads),
        payload_log_dir=_coerce_path(data.get("payload_log_dir")),
        payload_log_retention=retention,
        payload_log_max_bytes=max_bytes,
    )


def _env_bool(raw: str) -> Optional[bool]:
    token = raw.strip().lower()
    if token in {"1", "true", "yes", "on"}:
        return True
    if token in {"0", "false", "no", "off"}:
        return False
    return None


def _env_port(raw: str) -> Optional[int]:
    token = raw.strip()
    if not token.isdigit():
        return None
    return _coerce_port(token, DEFAULT_PORT)


_ENV_PARSERS: Dict[str, tuple[str, Callable[[str], Any]]] = {
    "HOST": ("host", lambda raw: raw.strip() or None),
    "PORT": ("port", _env_port),
    "LINGER_SECONDS": ("linger_seconds", lambda raw: _coerce_seconds(raw, None)),
    "LOG_PAYLOADS": ("log_payloads", _env_bool),
    "PAYLOAD_LOG_DIR": ("payload_log_dir", _coerce_path),
}


def apply_env_overrides(
    settings: BridgeSettings,
    environ: Optional[Mapping[str, str]] = None,
    *,
    logger: object | None = None,
) -> tuple[BridgeSettings, OverrideResult]:
    """Overlay ``DPSBAR_*`` environment variables onto ``settings``."""
    env = os.environ if environ is None else environ
    result = OverrideResult()
    changes: Dict[str, Any] = {}
    for suffix, (attr, parser) in _ENV_PARSERS.items():
        key = ENV_PREFIX + suffix
        raw = env.get(key)
        if raw is None:
            continue
        value = parser(raw)
        if value is None:
            result.rejected.append(key)
            continue
        changes[attr] = value
        result.applied.append(key)

    if logger and result.applied:
        try:
            logger.debug("Applied env overrides: %s", ", ".join(result.applied))
        except Exception:
            pass
    if logger and result.rejected:
        try:
            logger.warning("Rejected env overrides (unparsable): %s", ", ".join(result.rejected))
        except Exception:
            pass
    return replace(settings, **changes), result
