"""Combat-state debouncer driving the telemetry connection and the bar text."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Optional, Protocol

from .combat_events import MetricUpdate
from .settings import DEFAULT_LINGER_SECONDS, ConnectionTarget

FINAL_MARKER = "● "
JOB_PLACEHOLDER = "???"

_LOGGER = logging.getLogger("DpsBar.CombatState")


class CombatPhase(Enum):
    IDLE = "idle"
    ACTIVE = "active"
    LINGERING = "lingering"


class MetricKind(Enum):
    PRIMARY = "DPS"
    SECONDARY = "Party DPS"

    @property
    def label(self) -> str:
        return self.value

    def toggled(self) -> "MetricKind":
        return MetricKind.SECONDARY if self is MetricKind.PRIMARY else MetricKind.PRIMARY


@dataclass
class DisplayState:
    last_value: float = 0.0
    last_encounter_value: float = 0.0
    last_job: Optional[str] = None
    show_final_marker: bool = False
    selected_metric: MetricKind = MetricKind.PRIMARY

    def value_for(self, kind: MetricKind) -> float:
        if kind is MetricKind.SECONDARY:
            return self.last_encounter_value
        return self.last_value


def render_display_text(state: DisplayState) -> str:
    kind = state.selected_metric
    value = state.value_for(kind)
    if value <= 0:
        return f"- {kind.label}"
    marker = FINAL_MARKER if state.show_final_marker else ""
    job = state.last_job.upper() if state.last_job else JOB_PLACEHOLDER
    return f"{marker}{job} {int(round(value))} {kind.label}"


class TelemetryClientLike(Protocol):
    @property
    def connected(self) -> bool: ...

    def connect(self, host: str, port: int) -> bool: ...

    def disconnect(self) -> None: ...


ClientFactory = Callable[[Callable[[MetricUpdate], None]], TelemetryClientLike]


class CombatStateDebouncer:
    """Turns a sampled in-combat flag into connect/linger/disconnect cycles.

    ``tick`` and ``toggle_metric`` are expected on the host's thread. Metric
    updates arrive on the client's receive thread; ``DisplayState`` and the
    display sink are only touched under ``_lock``. Client calls that may join a
    receive thread are always made with the lock released.

    Each cycle gets a fresh client from ``client_factory``; updates from a
    superseded generation are dropped.
    """

    def __init__(
        self,
        client_factory: ClientFactory,
        display: Callable[[str], None],
        *,
        target: Optional[ConnectionTarget] = None,
        linger_seconds: float = DEFAULT_LINGER_SECONDS,
        time_source: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._factory = client_factory
        self._display = display
        self._target = target or ConnectionTarget()
        self._linger_seconds = max(0.0, float(linger_seconds))
        self._time = time_source
        self._logger = logger or _LOGGER
        self._lock = threading.Lock()
        self._state = DisplayState()
        self._phase = CombatPhase.IDLE
        self._combat_end: Optional[float] = None
        self._generation = 0
        self._client = self._new_client()

    @property
    def phase(self) -> CombatPhase:
        return self._phase

    @property
    def client(self) -> TelemetryClientLike:
        return self._client

    @property
    def display_state(self) -> DisplayState:
        with self._lock:
            return replace(self._state)

    @property
    def display_text(self) -> str:
        with self._lock:
            return render_display_text(self._state)

    def refresh(self) -> None:
        with self._lock:
            self._render_locked()

    # Host-driven transitions -------------------------------------------------

    def tick(self, in_combat: bool) -> None:
        if self._phase is CombatPhase.IDLE:
            if in_combat:
                self._enter_combat()
        elif self._phase is CombatPhase.ACTIVE:
            if in_combat:
                self._ensure_connected()
            else:
                self._combat_end = self._time()
                self._phase = CombatPhase.LINGERING
                self._logger.info(
                    "Left combat - will disconnect in %.1f seconds to get final DPS update",
                    self._linger_seconds,
                )
                self._check_linger()
        elif in_combat:
            self._resume_combat()
        else:
            self._check_linger()

    def toggle_metric(self) -> MetricKind:
        with self._lock:
            self._state.selected_metric = self._state.selected_metric.toggled()
            self._state.show_final_marker = False
            self._render_locked()
            selected = self._state.selected_metric
        self._logger.info("Display metric switched to %s", selected.label)
        return selected

    def shutdown(self) -> None:
        """Drop the live generation, leaving a fresh idle client behind."""
        with self._lock:
            old = self._client
            self._client = self._new_client()
            self._phase = CombatPhase.IDLE
            self._combat_end = None
        old.disconnect()

    # Internal helpers -----------------------------------------------------------

    def _new_client(self) -> TelemetryClientLike:
        self._generation += 1
        generation = self._generation
        return self._factory(lambda update: self._on_metric(generation, update))

    def _enter_combat(self) -> None:
        with self._lock:
            self._state = DisplayState(selected_metric=self._state.selected_metric)
            self._phase = CombatPhase.ACTIVE
            self._combat_end = None
            self._render_locked()
        self._logger.info("Entered combat - connecting to OverlayPlugin")
        self._client.connect(self._target.host, self._target.port)

    def _ensure_connected(self) -> None:
        if self._client.connected:
            return
        with self._lock:
            old = self._client
            self._client = self._new_client()
        old.disconnect()
        self._logger.debug("Telemetry not connected during combat; retrying")
        self._client.connect(self._target.host, self._target.port)

    def _resume_combat(self) -> None:
        with self._lock:
            self._phase = CombatPhase.ACTIVE
            self._combat_end = None
            self._state.show_final_marker = False
            self._render_locked()
        self._logger.info("Re-entered combat before linger expired; keeping connection")

    def _check_linger(self) -> None:
        if self._combat_end is None:
            return
        elapsed = self._time() - self._combat_end
        if elapsed < self._linger_seconds:
            return
        self._logger.info("%.1f seconds elapsed - disconnecting from OverlayPlugin", elapsed)
        with self._lock:
            self._state.show_final_marker = True
            self._render_locked()
            old = self._client
            self._client = self._new_client()
            self._phase = CombatPhase.IDLE
            self._combat_end = None
        old.disconnect()

    def _on_metric(self, generation: int, update: MetricUpdate) -> None:
        with self._lock:
            if generation != self._generation or self._phase is CombatPhase.IDLE:
                return
            self._state.last_value = update.value
            self._state.last_job = update.job_tag
            if update.encounter_value is not None:
                self._state.last_encounter_value = update.encounter_value
            self._render_locked()

    def _render_locked(self) -> None:
        self._display(render_display_text(self._state))
