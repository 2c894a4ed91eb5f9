"""Combat telemetry bridge that feeds a DPS readout in the host's server bar."""
from __future__ import annotations

from .combat_events import CombatEvent, MetricUpdate, build_subscribe_message, decode_combat_data
from .combat_state import CombatPhase, CombatStateDebouncer, DisplayState, MetricKind, render_display_text
from .reassembly import FrameKind, MessageReassembler, RawFrame
from .settings import BridgeSettings, ConnectionTarget
from .telemetry_client import TelemetryClient

__all__ = [
    "BridgeSettings",
    "CombatEvent",
    "CombatPhase",
    "CombatStateDebouncer",
    "ConnectionTarget",
    "DisplayState",
    "FrameKind",
    "MessageReassembler",
    "MetricKind",
    "MetricUpdate",
    "RawFrame",
    "TelemetryClient",
    "build_subscribe_message",
    "decode_combat_data",
    "render_display_text",
]
