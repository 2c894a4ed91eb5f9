from __future__ import annotations

import pytest

from dps_plugin.combat_events import MetricUpdate
from dps_plugin.combat_state import (
    CombatPhase,
    CombatStateDebouncer,
    DisplayState,
    MetricKind,
    render_display_text,
)
from dps_plugin.settings import ConnectionTarget


class FakeClient:
    def __init__(self, on_metric, connect_result: bool = True) -> None:
        self.on_metric = on_metric
        self.connect_result = connect_result
        self.connect_calls = []
        self.disconnect_calls = 0
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    def connect(self, host: str, port: int) -> bool:
        self.connect_calls.append((host, port))
        self._connected = self.connect_result
        return self.connect_result

    def disconnect(self) -> None:
        self.disconnect_calls += 1
        self._connected = False


class FakeFactory:
    def __init__(self, connect_results=()) -> None:
        self.clients = []
        self._connect_results = list(connect_results)

    def __call__(self, on_metric) -> FakeClient:
        result = self._connect_results.pop(0) if self._connect_results else True
        client = FakeClient(on_metric, connect_result=result)
        self.clients.append(client)
        return client

    @property
    def disconnects(self) -> int:
        return sum(client.disconnect_calls for client in self.clients)

    @property
    def connects(self) -> int:
        return sum(len(client.connect_calls) for client in self.clients)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def harness():
    factory = FakeFactory()
    clock = FakeClock()
    texts = []
    debouncer = CombatStateDebouncer(
        factory,
        texts.append,
        target=ConnectionTarget("127.0.0.1", 10501),
        linger_seconds=2.0,
        time_source=clock,
    )
    return debouncer, factory, clock, texts


def test_linger_expiry_disconnects_once_and_sets_final_marker(harness):
    debouncer, factory, clock, texts = harness

    debouncer.tick(True)
    assert debouncer.phase is CombatPhase.ACTIVE
    assert factory.clients[0].connect_calls == [("127.0.0.1", 10501)]
    factory.clients[0].on_metric(MetricUpdate(value=1234.6, job_tag="drg"))
    assert texts[-1] == "DRG 1235 DPS"

    clock.now = 1.0
    for step in range(9):
        clock.now = 1.0 + 0.25 * step
        debouncer.tick(False)
        if step < 8:
            assert factory.disconnects == 0
            assert debouncer.display_state.show_final_marker is False
            assert debouncer.phase is CombatPhase.LINGERING

    assert factory.disconnects == 1
    assert debouncer.phase is CombatPhase.IDLE
    assert debouncer.display_state.show_final_marker is True
    assert texts[-1] == "● DRG 1235 DPS"
    assert len(factory.clients) == 2
    assert debouncer.client is factory.clients[1]
    assert factory.clients[1].connect_calls == []

    for _ in range(5):
        clock.now += 1.0
        debouncer.tick(False)
    assert factory.disconnects == 1
    assert debouncer.display_state.show_final_marker is True

    debouncer.tick(True)
    assert debouncer.display_state.show_final_marker is False
    assert factory.clients[1].connect_calls == [("127.0.0.1", 10501)]


def test_reentering_combat_during_linger_keeps_connection(harness):
    debouncer, factory, clock, texts = harness

    debouncer.tick(True)
    clock.now = 0.5
    debouncer.tick(False)
    clock.now = 1.5
    debouncer.tick(False)
    clock.now = 2.0
    debouncer.tick(True)

    assert debouncer.phase is CombatPhase.ACTIVE
    assert factory.disconnects == 0
    assert factory.connects == 1
    assert debouncer.display_state.show_final_marker is False

    clock.now = 3.0
    debouncer.tick(False)
    clock.now = 4.9
    debouncer.tick(False)
    assert factory.disconnects == 0
    clock.now = 5.0
    debouncer.tick(False)
    assert factory.disconnects == 1


def test_entering_combat_resets_display_values(harness):
    debouncer, factory, clock, texts = harness
    debouncer.tick(True)
    factory.clients[0].on_metric(MetricUpdate(value=800.0, job_tag="whm", encounter_value=2400.0))
    debouncer.tick(False)
    clock.now = 2.0
    debouncer.tick(False)
    assert texts[-1] == "● WHM 800 DPS"

    debouncer.tick(True)
    state = debouncer.display_state
    assert state.last_value == 0.0
    assert state.last_encounter_value == 0.0
    assert state.last_job is None
    assert texts[-1] == "- DPS"


def test_updates_while_idle_or_from_stale_generation_are_dropped(harness):
    debouncer, factory, clock, texts = harness
    factory.clients[0].on_metric(MetricUpdate(value=50.0))
    assert debouncer.display_state.last_value == 0.0

    debouncer.tick(True)
    debouncer.tick(False)
    clock.now = 2.0
    debouncer.tick(False)
    debouncer.tick(True)
    stale = factory.clients[0]
    stale.on_metric(MetricUpdate(value=999.0, job_tag="blm"))
    assert debouncer.display_state.last_value == 0.0

    factory.clients[1].on_metric(MetricUpdate(value=10.0, job_tag="blm"))
    assert debouncer.display_state.last_value == 10.0


def test_updates_during_linger_are_still_shown(harness):
    debouncer, factory, clock, texts = harness
    debouncer.tick(True)
    debouncer.tick(False)
    factory.clients[0].on_metric(MetricUpdate(value=1500.4, job_tag="mnk"))
    assert texts[-1] == "MNK 1500 DPS"


def test_connect_failure_retries_on_next_combat_tick():
    factory = FakeFactory(connect_results=[False, True])
    debouncer = CombatStateDebouncer(factory, lambda text: None, time_source=FakeClock())

    debouncer.tick(True)
    assert factory.clients[0].connect_calls
    assert debouncer.client.connected is False

    debouncer.tick(True)
    assert len(factory.clients) == 2
    assert factory.clients[0].disconnect_calls == 1
    assert debouncer.client is factory.clients[1]
    assert debouncer.client.connected is True

    debouncer.tick(True)
    assert factory.connects == 2


def test_toggle_metric_switches_kind_and_clears_final_marker(harness):
    debouncer, factory, clock, texts = harness
    debouncer.tick(True)
    factory.clients[0].on_metric(MetricUpdate(value=1000.0, job_tag="drg", encounter_value=4321.5))
    debouncer.tick(False)
    clock.now = 2.0
    debouncer.tick(False)
    assert texts[-1] == "● DRG 1000 DPS"

    assert debouncer.toggle_metric() is MetricKind.SECONDARY
    assert debouncer.display_state.show_final_marker is False
    assert texts[-1] == "DRG 4322 Party DPS"

    assert debouncer.toggle_metric() is MetricKind.PRIMARY
    assert texts[-1] == "DRG 1000 DPS"


def test_selected_metric_survives_new_combat(harness):
    debouncer, factory, clock, texts = harness
    debouncer.toggle_metric()
    debouncer.tick(True)
    assert debouncer.display_state.selected_metric is MetricKind.SECONDARY
    assert texts[-1] == "- Party DPS"


def test_zero_linger_disconnects_on_first_out_of_combat_tick():
    factory = FakeFactory()
    debouncer = CombatStateDebouncer(factory, lambda text: None, linger_seconds=0.0, time_source=FakeClock())
    debouncer.tick(True)
    debouncer.tick(False)
    assert factory.disconnects == 1
    assert debouncer.phase is CombatPhase.IDLE


def test_shutdown_drops_live_generation(harness):
    debouncer, factory, clock, texts = harness
    debouncer.tick(True)
    debouncer.shutdown()
    assert factory.clients[0].disconnect_calls == 1
    assert debouncer.phase is CombatPhase.IDLE
    assert debouncer.client is factory.clients[1]


@pytest.mark.parametrize(
    "state, expected",
    [
        (DisplayState(), "- DPS"),
        (DisplayState(last_value=-5.0, last_job="drg"), "- DPS"),
        (DisplayState(last_value=1234.6, last_job="drg"), "DRG 1235 DPS"),
        (DisplayState(last_value=99.4), "??? 99 DPS"),
        (DisplayState(last_value=10.0, last_job="pld", show_final_marker=True), "● PLD 10 DPS"),
        (DisplayState(last_value=10.0, selected_metric=MetricKind.SECONDARY), "- Party DPS"),
        (
            DisplayState(last_value=10.0, last_encounter_value=5000.0, last_job="sch", selected_metric=MetricKind.SECONDARY),
            "SCH 5000 Party DPS",
        ),
    ],
)
def test_render_display_text(state, expected):
    assert render_display_text(state) == expected
