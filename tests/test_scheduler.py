"""
Tests for the sampling loop: wait computation, publishing, failure handling
and shutdown.
"""
import threading
import time

import pytest

from bsec_exporter.bridge import MetricsBridge
from bsec_exporter.engine.interface import SampleRate, Subscription
from bsec_exporter.errors import EngineProcessError
from bsec_exporter.metrics import ExporterMetrics, create_registry
from bsec_exporter.scheduler import (
    Backoff,
    CycleOutcome,
    MonotonicClock,
    SamplingScheduler,
    compute_wait,
)
from bsec_exporter.simulator import ScriptedEngine, ScriptedStep
from bsec_exporter.state import PersistedState, RestoreOutcome, StatePersister

from conftest import FlakySensor, MemoryStore

IAQ_LP = [Subscription("iaq", SampleRate.LP)]


def make_scheduler(steps, *, clock, store=None, sensor=None, subscriptions=IAQ_LP, echo_raw=False, **kwargs):
    engine = ScriptedEngine(steps, echo_raw=echo_raw)
    engine.update_subscription(subscriptions)
    metrics = ExporterMetrics()
    bridge = MetricsBridge(
        s.name for s in subscriptions if s.sample_rate is not SampleRate.DISABLED
    )
    persister = StatePersister(
        store if store is not None else MemoryStore(),
        save_interval_s=kwargs.pop("save_interval_s", 3600.0),
        clock=lambda: clock.now_ns() / 1e9,
        metrics=metrics,
    )
    scheduler = SamplingScheduler(
        sensor or FlakySensor(temperature=25.0, humidity=40.0, pressure=1013.0, gas_resistance=50_000.0),
        engine,
        bridge,
        persister,
        clock=clock,
        metrics=metrics,
        **kwargs,
    )
    return scheduler


def step_once(scheduler: SamplingScheduler) -> CycleOutcome:
    """One Waiting -> Publishing pass, without the thread."""
    scheduler.clock.wait(scheduler.next_delay(), threading.Event())
    return scheduler.run_cycle()


class TestComputeWait:
    @pytest.mark.parametrize(
        "next_call_ns, now_ns, expected",
        [
            (5_000_000_000, 2_000_000_000, 3.0),
            (2_000_000_000, 2_000_000_000, 0.0),
            (1_000_000_000, 2_000_000_000, 0.0),
            (0, 2_000_000_000, 0.0),
            (2_000_500_000, 2_000_000_000, 0.0005),
        ],
    )
    def test_hint_clamped_to_not_in_the_past(self, next_call_ns, now_ns, expected):
        assert compute_wait(next_call_ns, now_ns) == pytest.approx(expected)

    def test_never_negative_for_any_hint_sequence(self):
        now = 10_000_000_000
        for hint in range(0, 20_000_000_000, 750_000_000):
            wait = compute_wait(hint, now)
            assert wait >= 0
            assert wait == pytest.approx(max(0, hint - now) / 1e9)


class TestBackoff:
    def test_capped_exponential(self):
        backoff = Backoff(initial_s=1.0, max_s=10.0)
        assert [backoff.delay(n) for n in range(0, 7)] == [0.0, 1.0, 2.0, 4.0, 8.0, 10.0, 10.0]


class TestPublishing:
    def test_iaq_scenario(self, clock):
        steps = [
            ScriptedStep(outputs={"iaq": v}, next_call_delta_s=3.0)
            for v in (50.0, 52.0, 53.5)
        ]
        scheduler = make_scheduler(steps, clock=clock)

        outcomes = [step_once(scheduler) for _ in range(3)]

        assert outcomes == [CycleOutcome.PUBLISHED] * 3
        # cold start samples immediately, then follows the +3s hints
        assert clock.waits == [0.0, pytest.approx(3.0), pytest.approx(3.0)]
        snapshot = scheduler.bridge.read()
        assert snapshot.get("iaq").value == 53.5
        assert snapshot.missing() == ()

        registry = create_registry(scheduler.bridge)
        assert registry.get_sample_value("iaq") == 53.5

    def test_sample_passed_to_engine(self, clock):
        scheduler = make_scheduler([ScriptedStep(outputs={"iaq": 1.0})], clock=clock, heat_source_offset=1.5)
        step_once(scheduler)

        sample, offset = scheduler.engine.processed[0]
        assert (sample.temperature, sample.humidity, sample.pressure, sample.gas_resistance) == (
            25.0, 40.0, 1013.0, 50_000.0
        )
        assert sample.timestamp_ns == clock.now
        assert offset == 1.5

    def test_ambient_temperature_carried_forward(self, clock):
        sensor = FlakySensor(temperature=26.0)
        subs = [Subscription("sensor_heat_compensated_temperature", SampleRate.LP)]
        scheduler = make_scheduler(
            [ScriptedStep(), ScriptedStep()],
            clock=clock,
            sensor=sensor,
            subscriptions=subs,
            heat_source_offset=2.0,
            echo_raw=True,
            initial_ambient_temperature=18.0,
        )

        step_once(scheduler)
        step_once(scheduler)

        assert sensor.ambient == [18.0, 24.0]

    def test_outputs_unavailable_until_first_cycle(self, clock, store):
        scheduler = make_scheduler([ScriptedStep(outputs={"iaq": 25.0})], clock=clock, store=store)

        outcome = scheduler.persister.restore(scheduler.engine)
        assert outcome is RestoreOutcome.COLD_START
        assert scheduler.bridge.read().get("iaq") is None
        assert scheduler.metrics.registry.get_sample_value("bsec_exporter_cold_start") == 1.0

        step_once(scheduler)
        assert scheduler.bridge.read().get("iaq").value == 25.0
        assert scheduler.fatal_error is None

    def test_idle_when_nothing_subscribed(self, clock):
        scheduler = make_scheduler(
            [], clock=clock, subscriptions=[Subscription("iaq", SampleRate.DISABLED)]
        )
        assert step_once(scheduler) is CycleOutcome.IDLE
        assert scheduler.sensor.reads == 0


class TestFailures:
    def test_sensor_failures_do_not_touch_published_values(self, clock):
        steps = [ScriptedStep(outputs={"iaq": v}, next_call_delta_s=3.0) for v in (40.0, 41.0)]
        sensor = FlakySensor(fail_on={2, 3, 4, 5})
        scheduler = make_scheduler(
            steps,
            clock=clock,
            sensor=sensor,
            failure_alert_threshold=3,
            backoff=Backoff(initial_s=1.0, max_s=4.0),
        )
        assert step_once(scheduler) is CycleOutcome.PUBLISHED
        before = scheduler.bridge.read()

        for _ in range(4):
            assert step_once(scheduler) is CycleOutcome.SENSOR_FAILED
            assert scheduler.bridge.read() is before

        assert scheduler.state.consecutive_failures == 4
        assert scheduler.fatal_error is None
        registry = scheduler.metrics.registry
        assert registry.get_sample_value("bsec_exporter_sensor_degraded") == 1.0
        assert registry.get_sample_value("bsec_exporter_sensor_read_errors_total") == 4.0
        assert registry.get_sample_value("bsec_exporter_engine_errors_total", {"severity": "fatal"}) is None
        assert scheduler.next_delay() == 4.0

        assert step_once(scheduler) is CycleOutcome.PUBLISHED
        after = scheduler.bridge.read()
        assert after.sequence == before.sequence + 1
        assert after.get("iaq").value == 41.0
        assert scheduler.state.consecutive_failures == 0
        assert registry.get_sample_value("bsec_exporter_sensor_degraded") == 0.0

    def test_recoverable_engine_error_skips_cycle(self, clock):
        steps = [
            ScriptedStep(outputs={"iaq": 10.0}),
            ScriptedStep(error=EngineProcessError("value limits", code=-2, fatal=False)),
            ScriptedStep(outputs={"iaq": 12.0}),
        ]
        scheduler = make_scheduler(steps, clock=clock)

        assert [step_once(scheduler) for _ in range(3)] == [
            CycleOutcome.PUBLISHED,
            CycleOutcome.SKIPPED,
            CycleOutcome.PUBLISHED,
        ]
        assert scheduler.bridge.read().get("iaq").value == 12.0
        assert scheduler.fatal_error is None

    def test_unexpected_driver_error_is_retried(self, clock):
        steps = [ScriptedStep(outputs={"iaq": v}, next_call_delta_s=3.0) for v in (20.0, 21.0)]
        sensor = FlakySensor(fail_on={2}, fail_with=ValueError)
        scheduler = make_scheduler(steps, clock=clock, sensor=sensor)

        assert [step_once(scheduler) for _ in range(3)] == [
            CycleOutcome.PUBLISHED,
            CycleOutcome.SENSOR_FAILED,
            CycleOutcome.PUBLISHED,
        ]
        assert scheduler.fatal_error is None
        assert scheduler.state.consecutive_failures == 0
        assert scheduler.bridge.read().get("iaq").value == 21.0
        assert scheduler.metrics.registry.get_sample_value("bsec_exporter_sensor_read_errors_total") == 1.0

    def test_unexpected_driver_error_does_not_end_the_thread(self, store):
        steps = [ScriptedStep(outputs={"iaq": float(i)}, next_call_delta_s=0.01) for i in range(1000)]
        sensor = FlakySensor(fail_on={2}, fail_with=ValueError)
        scheduler = make_scheduler(
            steps,
            clock=MonotonicClock(),
            store=store,
            sensor=sensor,
            backoff=Backoff(initial_s=0.01, max_s=0.01),
        )

        scheduler.start()
        deadline = time.monotonic() + 5.0
        while scheduler.state.cycles < 3 and time.monotonic() < deadline:
            time.sleep(0.01)
        try:
            assert scheduler.state.cycles >= 3
            assert scheduler.running
            assert scheduler.fatal_error is None
        finally:
            assert scheduler.stop(grace_s=2.0) is True
        assert len(store.saved) == 1

    def test_fatal_engine_error_terminates_after_final_save(self, clock, store):
        terminated = []
        steps = [
            ScriptedStep(outputs={"iaq": 10.0}, next_call_delta_s=3.0),
            ScriptedStep(error=EngineProcessError("corrupt", code=-33, fatal=True)),
        ]
        scheduler = make_scheduler(steps, clock=clock, store=store, on_terminated=terminated.append)

        scheduler.run()

        assert scheduler.fatal_error.code == -33
        assert terminated == [scheduler]
        assert len(store.saved) == 1
        assert store.saved[0].blob == scheduler.engine.get_state()
        assert scheduler.bridge.read().get("iaq").value == 10.0
        assert not scheduler.running


class TestShutdown:
    def test_shutdown_while_waiting(self, store):
        # after the first cycle the engine asks for the next sample in an hour
        steps = [ScriptedStep(outputs={"iaq": 30.0}, next_call_delta_s=3600.0)]
        scheduler = make_scheduler(steps, clock=MonotonicClock(), store=store)

        scheduler.start()
        deadline = time.monotonic() + 5.0
        while scheduler.state.cycles < 1 and time.monotonic() < deadline:
            time.sleep(0.01)
        assert scheduler.state.cycles == 1

        started = time.monotonic()
        assert scheduler.stop(grace_s=2.0) is True
        assert time.monotonic() - started < 2.0

        assert len(store.saved) == 1
        assert store.saved[0] == PersistedState(
            blob=scheduler.engine.get_state(), version=scheduler.engine.version
        )
        assert not scheduler.running

    def test_periodic_save(self, clock, store):
        steps = [ScriptedStep(outputs={"iaq": float(i)}, next_call_delta_s=3.0) for i in range(5)]
        scheduler = make_scheduler(steps, clock=clock, store=store, save_interval_s=5.0)
        scheduler.persister.restore(scheduler.engine)

        for _ in range(5):
            step_once(scheduler)

        # cycles 0s, 3s, 6s, 9s, 12s after restore; saves at 6s and 12s
        assert len(store.saved) == 2
        assert store.saved[-1].blob == b"scripted:5"
