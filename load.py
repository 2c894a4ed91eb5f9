"""Host hook entry point for the DPS server-bar plugin."""
from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Mapping, Optional, Protocol

if __package__:
    from .version import __version__ as DPSBAR_VERSION
    from .dps_plugin.combat_events import MetricUpdate
    from .dps_plugin.combat_state import CombatStateDebouncer, MetricKind
    from .dps_plugin.lifecycle import LifecycleTracker
    from .dps_plugin.logging_utils import (
        HostLogSink,
        LOGGER_NAME,
        configure_payload_logger,
        configure_plugin_logger,
        release_payload_logger,
    )
    from .dps_plugin.settings import BridgeSettings, apply_env_overrides, settings_from_mapping
    from .dps_plugin.telemetry_client import TelemetryClient
else:  # pragma: no cover - host loads the plugin as a top-level module
    from version import __version__ as DPSBAR_VERSION
    from dps_plugin.combat_events import MetricUpdate
    from dps_plugin.combat_state import CombatStateDebouncer, MetricKind
    from dps_plugin.lifecycle import LifecycleTracker
    from dps_plugin.logging_utils import (
        HostLogSink,
        LOGGER_NAME,
        configure_payload_logger,
        configure_plugin_logger,
        release_payload_logger,
    )
    from dps_plugin.settings import BridgeSettings, apply_env_overrides, settings_from_mapping
    from dps_plugin.telemetry_client import TelemetryClient

PLUGIN_NAME = "DpsInServerBar"
PLUGIN_VERSION = DPSBAR_VERSION

LOGGER = logging.getLogger(LOGGER_NAME)


class HostBindings(Protocol):
    """What the host must provide; click registration is optional."""

    def set_text(self, text: str) -> None: ...


class _PluginRuntime:
    """Encapsulates plugin state so host globals stay tidy."""

    def __init__(self, host: HostBindings, settings: BridgeSettings) -> None:
        self.host = host
        self.settings = settings
        self.tracker = LifecycleTracker(LOGGER)
        self._lock = threading.Lock()
        self._running = False
        self._click_registered = False
        self._payload_logger: Optional[logging.Logger] = None
        self.debouncer: Optional[CombatStateDebouncer] = None

    # Lifecycle ------------------------------------------------------------

    def start(self) -> str:
        with self._lock:
            if self._running:
                return PLUGIN_NAME
            self._payload_logger = self._open_payload_log()
            self.debouncer = CombatStateDebouncer(
                self._build_client,
                self._set_text,
                target=self.settings.target,
                linger_seconds=self.settings.linger_seconds,
            )
            self.debouncer.refresh()
            self._register_click_handler()
            self._running = True
        LOGGER.info("Plugin started (v%s); telemetry peer %s", PLUGIN_VERSION, self.settings.target.uri)
        return PLUGIN_NAME

    def stop(self) -> None:
        with self._lock:
            if not self._running:
                return
            self._running = False
        LOGGER.info("Plugin stopping")
        self._unregister_click_handler()
        if self.debouncer is not None:
            self.debouncer.shutdown()
        self.tracker.report_live("after stop")
        if self._payload_logger is not None:
            release_payload_logger()
            self._payload_logger = None

    # Host events ----------------------------------------------------------

    def tick(self, in_combat: bool) -> None:
        if not self._running or self.debouncer is None:
            return
        self.debouncer.tick(bool(in_combat))

    def toggle_metric(self) -> Optional[MetricKind]:
        if not self._running or self.debouncer is None:
            return None
        return self.debouncer.toggle_metric()

    # Helpers --------------------------------------------------------------

    def _build_client(self, on_metric: Callable[[MetricUpdate], None]) -> TelemetryClient:
        return TelemetryClient(
            on_metric,
            shutdown_timeout=self.settings.shutdown_timeout,
            tracker=self.tracker,
            payload_logger=self._payload_logger,
        )

    def _set_text(self, text: str) -> None:
        try:
            self.host.set_text(text)
        except Exception as exc:
            LOGGER.warning("Failed to update server bar text: %s", exc)

    def _open_payload_log(self) -> Optional[logging.Logger]:
        if not self.settings.log_payloads:
            return None
        if self.settings.payload_log_dir is None:
            LOGGER.warning("Payload logging enabled without a payload_log_dir; capture disabled")
            return None
        try:
            return configure_payload_logger(
                self.settings.payload_log_dir,
                enabled=True,
                retention=self.settings.payload_log_retention,
                max_bytes=self.settings.payload_log_max_bytes,
            )
        except OSError as exc:
            LOGGER.warning("Unable to open payload log in %s: %s", self.settings.payload_log_dir, exc)
            return None

    def _register_click_handler(self) -> None:
        register = getattr(self.host, "register_click_handler", None)
        if not callable(register):
            LOGGER.debug("Host has no click notifications; metric toggle unavailable from the bar")
            return
        try:
            register(self._on_click)
        except Exception as exc:
            LOGGER.warning("Failed to register click handler: %s", exc)
            return
        self._click_registered = True

    def _unregister_click_handler(self) -> None:
        if not self._click_registered:
            return
        self._click_registered = False
        unregister = getattr(self.host, "unregister_click_handler", None)
        if not callable(unregister):
            return
        try:
            unregister(self._on_click)
        except Exception as exc:
            LOGGER.debug("Failed to unregister click handler: %s", exc)

    def _on_click(self, *_args: Any) -> None:
        self.toggle_metric()


# Host hook functions ------------------------------------------------------

_plugin: Optional[_PluginRuntime] = None


def plugin_start(
    host: HostBindings,
    settings: Optional[Mapping[str, Any] | BridgeSettings] = None,
    log_sink: Optional[HostLogSink] = None,
) -> str:
    global _plugin
    configure_plugin_logger(log_sink)
    if _plugin is not None:
        LOGGER.debug("plugin_start called while already running")
        return _plugin.start()
    resolved = settings if isinstance(settings, BridgeSettings) else settings_from_mapping(settings)
    resolved, overrides = apply_env_overrides(resolved, logger=LOGGER)
    LOGGER.debug("Initialising %s with %s (env overrides: %s)", PLUGIN_NAME, resolved, overrides.applied or "none")
    _plugin = _PluginRuntime(host, resolved)
    return _plugin.start()


def plugin_stop() -> None:
    global _plugin
    if _plugin:
        try:
            _plugin.stop()
        finally:
            _plugin = None


def on_tick(in_combat: bool) -> None:
    if _plugin:
        _plugin.tick(in_combat)


def toggle_metric() -> Optional[MetricKind]:
    if _plugin:
        return _plugin.toggle_metric()
    return None


# Metadata expected by some plugin loaders
name = PLUGIN_NAME
version = PLUGIN_VERSION
