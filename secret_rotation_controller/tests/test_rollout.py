# -*- coding: utf-8 -*-
"""
Tests for staged consumer rollouts and rotation scheduling.

"""

import unittest
from datetime import timedelta

from fakes import FakeClock, FakeTimer, RecordingSignal, ScriptedHealth

from secret_rotation_controller import (BackendType, CollectingEventSink, Condition,
                                        ConsumerBinding, ConsumerNotifier, DescriptorNotFound,
                                        DescriptorStore, RotationPolicy, RotationScheduler,
                                        RotationState, SecretDescriptor)
from secret_rotation_controller.models import RolloutBatch
from secret_rotation_controller.notifier import waves
from secret_rotation_controller.status import ConditionBoard

CONSUMERS = ("c1", "c2", "c3", "c4", "c5")


def descriptor(name="db", consumers=CONSUMERS, policy=None, last_rotated_at=None, applied=1):
    return SecretDescriptor(
        name=name, backend=BackendType.NATIVE, keys=("password",),
        rotation_policy=policy or RotationPolicy.manual(),
        consumers=tuple(ConsumerBinding(consumer_id=c, descriptor_name=name,
                                        last_applied_version=applied) for c in consumers),
        last_rotated_at=last_rotated_at)


class TestConsumerNotifier(unittest.TestCase):
    def setUp(self):
        self.store = DescriptorStore([descriptor()])
        self.timer = FakeTimer()
        self.sink = CollectingEventSink()
        self.signal = RecordingSignal()

    def notifier(self, health, **kwargs):
        return ConsumerNotifier(self.store, health, signal=self.signal, wave_size=2,
                                wave_timeout=30.0, poll_interval=5.0, emit=self.sink.emit,
                                sleep=self.timer.sleep, monotonic=self.timer.monotonic, **kwargs)

    def batch(self):
        return RolloutBatch(descriptor_name="db", version=2,
                            bindings=self.store.get("db").consumers)

    def applied(self):
        return {b.consumer_id: b.last_applied_version for b in self.store.get("db").consumers}

    def test_waves(self):
        self.assertEqual(waves([1, 2, 3, 4, 5], 2), [[1, 2], [3, 4], [5]])

    def test_all_waves_healthy(self):
        outcome = self.notifier(ScriptedHealth()).rollout(self.batch())
        self.assertTrue(outcome.completed)
        self.assertEqual(outcome.applied, list(CONSUMERS))
        self.assertEqual(self.signal.notified, [(c, 2) for c in CONSUMERS])
        self.assertEqual(set(self.applied().values()), {2})
        self.assertEqual([e.result for e in self.sink.events], ["Success"] * 3)
        self.assertEqual(self.timer.sleeps, [])

    def test_waits_for_slow_consumer(self):
        outcome = self.notifier(ScriptedHealth(slow={"c2": 2})).rollout(self.batch())
        self.assertTrue(outcome.completed)
        self.assertEqual(self.timer.sleeps, [5.0, 5.0])

    def test_unhealthy_wave_halts_later_waves(self):
        outcome = self.notifier(ScriptedHealth(unhealthy={"c3"})).rollout(self.batch())
        self.assertFalse(outcome.completed)
        self.assertEqual(outcome.failed_wave, 2)
        self.assertEqual(outcome.unhealthy, ["c3"])
        self.assertEqual(outcome.pending, ["c3", "c4", "c5"])
        self.assertNotIn(("c5", 2), self.signal.notified)
        self.assertGreaterEqual(self.timer.now, 30.0)
        self.assertEqual(self.applied(), {"c1": 2, "c2": 2, "c3": 1, "c4": 1, "c5": 1})
        self.assertEqual([e.result for e in self.sink.events], ["Success", "Fatal"])

    def test_signal_failure_fails_wave(self):
        self.signal.failing.add("c1")
        outcome = self.notifier(ScriptedHealth()).rollout(self.batch())
        self.assertEqual(outcome.failed_wave, 1)
        self.assertEqual(outcome.unhealthy, ["c1"])
        self.assertEqual(set(self.applied().values()), {1})

    def test_health_check_error_counts_as_unhealthy(self):
        def health(consumer_id):
            if consumer_id == "c1":
                raise ConnectionError("metrics endpoint down")
            return True

        outcome = self.notifier(health).rollout(self.batch())
        self.assertEqual(outcome.failed_wave, 1)
        self.assertEqual(outcome.unhealthy, ["c1"])


class TestRotationScheduler(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.store = DescriptorStore([
            descriptor(name="db", policy=RotationPolicy.parse("30d"),
                       last_rotated_at=self.clock.now - timedelta(days=40)),
            descriptor(name="fresh", policy=RotationPolicy.parse("30d"),
                       last_rotated_at=self.clock.now - timedelta(days=1)),
            descriptor(name="manual", last_rotated_at=self.clock.now - timedelta(days=400)),
        ])
        self.conditions = ConditionBoard()
        self.sink = CollectingEventSink()
        self.enqueued = []
        self.scheduler = RotationScheduler(self.store, self.conditions, rollout_deadline=3600,
                                           enqueue=self.enqueued.append, emit=self.sink.emit,
                                           clock=self.clock)

    def test_sweep_marks_due(self):
        self.assertEqual(self.scheduler.sweep(), ["db"])
        self.assertIs(self.scheduler.state("db"), RotationState.DUE)
        self.assertIs(self.scheduler.state("fresh"), RotationState.IDLE)
        self.assertIs(self.scheduler.state("manual"), RotationState.IDLE)
        self.assertEqual(self.enqueued, ["db"])
        # still Due on the next sweep, enqueued again
        self.assertEqual(self.scheduler.sweep(), ["db"])

    def test_sweep_skips_operator_conditions(self):
        self.conditions.set("db", Condition.BLOCKED, "denied")
        self.assertEqual(self.scheduler.sweep(), [])

    def test_compromise_forces_due(self):
        self.scheduler.signal_compromise("manual")
        self.assertTrue(self.scheduler.is_due("manual"))
        self.assertEqual(self.enqueued, ["manual"])
        self.assertEqual(self.sink.for_descriptor("manual")[0].detail, "due: compromise")

    def test_request_unknown(self):
        with self.assertRaises(DescriptorNotFound):
            self.scheduler.request_rotation("nope")

    def test_rotation_completes(self):
        self.scheduler.sweep()
        self.scheduler.rotation_started("db", 2)
        self.clock.advance(minutes=5)
        self.scheduler.rollout_completed("db", 2)
        self.assertIs(self.scheduler.state("db"), RotationState.IDLE)
        self.assertEqual(self.store.get("db").last_rotated_at, self.clock.now)

    def test_rollout_of_other_version_does_not_finish(self):
        self.scheduler.rotation_started("db", 3)
        self.scheduler.rollout_completed("db", 2)
        self.assertIs(self.scheduler.state("db"), RotationState.ROTATING)

    def test_stalled_rotation(self):
        self.scheduler.rotation_started("db", 2)
        self.clock.advance(seconds=3601)
        self.scheduler.sweep()
        self.assertIs(self.conditions.condition("db"), Condition.ROTATION_STALLED)
        stalled = [e for e in self.sink.for_descriptor("db") if e.result == "Fatal"]
        self.assertEqual(len(stalled), 1)
        # once flagged the sweep leaves it alone
        self.scheduler.sweep()
        self.assertEqual(len([e for e in self.sink.for_descriptor("db") if e.result == "Fatal"]), 1)
        # a late rollout still finishes the rotation
        self.scheduler.rollout_completed("db", 2)
        self.assertIs(self.conditions.condition("db"), Condition.OK)

    def test_completed_rotation_clears_failed_rollout(self):
        self.scheduler.rotation_started("db", 2)
        self.conditions.set("db", Condition.ROLLOUT_FAILED, "wave 2 unhealthy")
        self.assertEqual(self.scheduler.sweep(), [])
        # an operator rotates again and this time every consumer takes it
        self.scheduler.request_rotation("db")
        self.scheduler.rotation_started("db", 3)
        self.scheduler.rollout_completed("db", 3)
        self.assertIs(self.conditions.condition("db"), Condition.OK)
        self.clock.advance(days=31)
        self.assertEqual(self.scheduler.sweep(), ["db"])

    def test_adopt_only_fills_missing_rotation_time(self):
        self.store.upsert(descriptor(name="new"))
        self.scheduler.adopt("new", self.clock.now - timedelta(days=3))
        self.assertEqual(self.store.get("new").last_rotated_at, self.clock.now - timedelta(days=3))
        self.scheduler.adopt("new", self.clock.now)
        self.assertEqual(self.store.get("new").last_rotated_at, self.clock.now - timedelta(days=3))

    def test_reset_drops_unfinished_rotation_only(self):
        self.scheduler.request_rotation("manual")
        self.scheduler.reset("manual")
        self.assertTrue(self.scheduler.is_due("manual"))
        self.scheduler.rotation_started("manual", 2)
        self.scheduler.reset("manual")
        self.assertIs(self.scheduler.state("manual"), RotationState.IDLE)


class TestConditionBoard(unittest.TestCase):
    def setUp(self):
        self.conditions = ConditionBoard()

    def test_degrade_and_clear(self):
        self.assertIs(self.conditions.degrade("db", "VaultDown"), Condition.DEGRADED)
        self.assertEqual(self.conditions.get("db"), (Condition.DEGRADED, "VaultDown"))
        self.assertIs(self.conditions.clear("db", only=(Condition.DEGRADED,)), Condition.DEGRADED)
        self.assertEqual(self.conditions.get("db"), (Condition.OK, None))

    def test_degrade_keeps_operator_conditions(self):
        for condition in (Condition.BLOCKED, Condition.ROTATION_STALLED, Condition.ROLLOUT_FAILED):
            self.conditions.set("db", condition, "needs a look")
            self.assertIs(self.conditions.degrade("db", "VaultDown"), condition)
            self.assertEqual(self.conditions.get("db"), (condition, "needs a look"))
            self.assertIs(self.conditions.clear("db", only=(Condition.DEGRADED,)), condition)
            self.assertTrue(self.conditions.needs_operator("db"))
