"""Decode OverlayPlugin CombatData payloads into typed combat events."""
from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Tuple

COMBAT_DATA_EVENT = "CombatData"
SELF_KEY = "YOU"
SELF_SUFFIX = "(YOU)"
PET_MARKER = "chocobo"
METRIC_FIELDS: Tuple[str, ...] = ("EncDPS", "encdps", "DPS")
JOB_FIELD = "Job"

_LOGGER = logging.getLogger("DpsBar.Telemetry")


@dataclass(frozen=True)
class CombatEvent:
    """Local player's row from one CombatData snapshot."""

    combatant_key: str
    metric_value: float
    job_tag: Optional[str] = None
    encounter_value: Optional[float] = None


@dataclass(frozen=True)
class MetricUpdate:
    """Published to the consumer for every accepted combat event."""

    value: float
    job_tag: Optional[str] = None
    encounter_value: Optional[float] = None

    @classmethod
    def from_event(cls, event: CombatEvent) -> "MetricUpdate":
        return cls(value=event.metric_value, job_tag=event.job_tag, encounter_value=event.encounter_value)


def build_subscribe_message(events: Tuple[str, ...] = (COMBAT_DATA_EVENT,)) -> str:
    """Return the subscription control message sent right after connecting."""
    return json.dumps({"call": "subscribe", "events": list(events)}, separators=(",", ":"))


def resolve_self_key(combatants: Mapping[str, Any]) -> Optional[str]:
    """Find the local player's row: ``YOU`` when solo, ``Name (YOU)`` in a party."""
    if SELF_KEY in combatants:
        return SELF_KEY
    for key in combatants:
        if SELF_SUFFIX in key and PET_MARKER not in key.lower():
            return key
    return None


def _metric_text(fields: Mapping[str, Any]) -> Optional[str]:
    for name in METRIC_FIELDS:
        raw = fields.get(name)
        if raw is None:
            continue
        text = str(raw).strip()
        if text:
            return text
    return None


def _parse_metric(text: str) -> Optional[float]:
    # float() also accepts digit grouping such as "1_000".
    if "_" in text:
        return None
    try:
        return float(text)
    except ValueError:
        return None


def _encounter_value(payload: Mapping[str, Any]) -> Optional[float]:
    encounter = payload.get("Encounter")
    if not isinstance(encounter, Mapping):
        return None
    text = _metric_text(encounter)
    if text is None:
        return None
    value = _parse_metric(text)
    if value is None or not math.isfinite(value):
        return None
    return value


def decode_combat_data(message: str, logger: Optional[logging.Logger] = None) -> Optional[CombatEvent]:
    """Decode one complete inbound message.

    Returns ``None`` for anything that is not a usable CombatData snapshot:
    malformed JSON, other event types, no self row, missing or unparsable
    metric fields, and NaN/infinite values. Never raises.
    """
    log = logger or _LOGGER
    try:
        payload = json.loads(message)
    except (TypeError, ValueError) as exc:
        log.warning("Failed to parse telemetry payload: %s", exc)
        return None
    if not isinstance(payload, dict):
        log.warning("Ignoring telemetry payload that is not a JSON object (%s)", type(payload).__name__)
        return None

    event_type = payload.get("type")
    if event_type != COMBAT_DATA_EVENT:
        log.debug("Ignoring non-CombatData event: %s", event_type)
        return None

    combatants = payload.get("Combatant")
    if not isinstance(combatants, dict):
        log.warning("No Combatant data in CombatData message")
        return None

    key = resolve_self_key(combatants)
    if key is None:
        log.warning("No 'YOU' entry in Combatant data (keys: %s)", ", ".join(combatants))
        return None
    fields = combatants[key]
    if not isinstance(fields, dict):
        log.warning("Combatant entry %r is not an object", key)
        return None
    if key != SELF_KEY:
        log.debug("Found player data under key: %s", key)

    text = _metric_text(fields)
    if text is None:
        log.warning("No EncDPS/DPS data found. Available fields: %s", ", ".join(fields))
        return None
    value = _parse_metric(text)
    if value is None:
        log.warning("Failed to parse EncDPS value: %r", text)
        return None
    if not math.isfinite(value):
        log.debug("Ignoring non-finite EncDPS value: %s", text)
        return None

    job = fields.get(JOB_FIELD)
    job_tag = str(job) if job not in (None, "") else None
    return CombatEvent(
        combatant_key=key,
        metric_value=value,
        job_tag=job_tag,
        encounter_value=_encounter_value(payload),
    )
