# -*- coding: utf-8 -*-
"""
Tests for single reconcile passes, retries and per descriptor coalescing.

"""

import threading
import unittest
from unittest import mock

from fakes import build_controller

from secret_rotation_controller import (BackendType, CallbackValueProvider, Condition, Denied,
                                        InMemoryBackend, ReconcileAction, ReconcileResult,
                                        RotationState, SecretDescriptor, Unavailable, VersionState)
from secret_rotation_controller.events import ROLLOUT_ACTION
from secret_rotation_controller.models import RotationPolicy


def declare(controller, name="db", keys=("username", "password"), consumers=()):
    return controller.declare({"name": name, "backend": "VaultLike", "keys": list(keys),
                               "rotationPolicy": "Manual", "consumers": list(consumers)})


def summary(records):
    return [(r.action, r.result) for r in records]


class GatedBackend(InMemoryBackend):
    """Holds every ``get`` until ``release`` is set."""

    def __init__(self):
        super(GatedBackend, self).__init__(backend_type=BackendType.VAULT_LIKE)
        self.entered = threading.Event()
        self.release = threading.Event()

    def get(self, name):
        self.entered.set()
        self.release.wait(10)
        return super(GatedBackend, self).get(name)


class TestReconcilePass(unittest.TestCase):
    def setUp(self):
        self.controller, self.backend, self.health, self.signal, self.clock, self.timer = \
            build_controller()

    def tearDown(self):
        self.controller.stop()

    def test_create_from_seed(self):
        declare(self.controller, consumers=["api"])
        records = self.controller.reconcile("db", timeout=10)
        self.assertEqual(summary(records), [(ReconcileAction.CREATE, ReconcileResult.SUCCESS)])
        self.assertEqual(records[0].desired_version, 1)
        self.assertEqual(self.backend.get("db").values, {"username": b"username-1",
                                                         "password": b"password-1"})
        descriptor = self.controller.store.get("db")
        self.assertEqual(descriptor.current_version, 1)
        self.assertEqual(descriptor.binding("api").last_applied_version, 1)
        self.assertIsNotNone(descriptor.last_rotated_at)

    def test_noop_when_in_sync(self):
        declare(self.controller)
        self.controller.reconcile("db", timeout=10)
        records = self.controller.reconcile("db", timeout=10)
        self.assertEqual(summary(records), [(ReconcileAction.NOOP, ReconcileResult.SUCCESS)])
        self.assertEqual(len(self.backend.stored_versions("db")), 1)

    def test_key_drift_rotates(self):
        self.backend.put("db", {"username": b"legacy"})
        declare(self.controller)
        records = self.controller.reconcile("db", timeout=10)
        self.assertEqual(records[0].action, ReconcileAction.ROTATE)
        self.assertEqual((records[0].observed_version, records[0].desired_version), (1, 2))
        self.assertEqual(self.backend.get("db").keys, frozenset(["username", "password"]))

    def test_provider_returning_current_values_writes_nothing(self):
        provider = CallbackValueProvider(seed=lambda d: {"password": "same"},
                                         generate=lambda d, current: {"password": "same"})
        controller, backend = build_controller(provider=provider)[:2]
        try:
            declare(controller, keys=("password",))
            controller.reconcile("db", timeout=10)
            records = controller.rotate("db").result(timeout=10)
            self.assertEqual(records[0].detail, "provider returned the current values")
            self.assertEqual(len(backend.stored_versions("db")), 1)
            self.assertIs(controller.scheduler.state("db"), RotationState.IDLE)
        finally:
            controller.stop()

    def test_transient_failure_retries_then_degrades(self):
        declare(self.controller)
        self.backend.fail_with("get", Unavailable("VaultLike", "get", "db", "VaultDown"))
        records = self.controller.reconcile("db", timeout=10)
        self.assertEqual(summary(records), [(ReconcileAction.NOOP, ReconcileResult.RETRYABLE)])
        self.assertEqual(self.backend.calls.count("get"), 5)
        self.assertEqual(len(self.timer.sleeps), 4)
        self.assertEqual(self.timer.sleeps, sorted(self.timer.sleeps))
        self.assertIs(self.controller.status("db").condition, Condition.DEGRADED)

        self.backend.clear_failures()
        records = self.controller.reconcile("db", timeout=10)
        self.assertEqual(summary(records), [(ReconcileAction.CREATE, ReconcileResult.SUCCESS)])
        self.assertIs(self.controller.status("db").condition, Condition.OK)

    def test_recovers_within_attempt_budget(self):
        declare(self.controller)
        self.backend.fail_with("put", Unavailable("VaultLike", "put", "db", "VaultDown"), times=2)
        records = self.controller.reconcile("db", timeout=10)
        self.assertEqual(summary(records), [(ReconcileAction.CREATE, ReconcileResult.SUCCESS)])
        self.assertEqual(self.backend.calls.count("put"), 3)

    def test_denied_blocks(self):
        declare(self.controller)
        self.backend.fail_with("put", Denied("VaultLike", "put", "db", "Forbidden (403)"))
        records = self.controller.reconcile("db", timeout=10)
        self.assertEqual(summary(records), [(ReconcileAction.CREATE, ReconcileResult.FATAL)])
        self.assertEqual(self.backend.calls.count("put"), 1)
        self.assertEqual(self.controller.status("db").state, "Blocked")
        # blocked descriptors are left alone until an operator steps in
        self.assertEqual(self.controller.reconcile("db", timeout=10), [])

    def test_provider_key_mismatch_blocks(self):
        controller = build_controller(
            provider=CallbackValueProvider(seed=lambda d: {"user": "app"}))[0]
        try:
            declare(controller)
            records = controller.reconcile("db", timeout=10)
            self.assertEqual(records[0].result, ReconcileResult.FATAL)
            self.assertIs(controller.status("db").condition, Condition.BLOCKED)
        finally:
            controller.stop()

    def test_unexpected_provider_error_degrades(self):
        def explode(descriptor):
            raise RuntimeError("entropy exhausted")

        controller = build_controller(provider=CallbackValueProvider(seed=explode))[0]
        try:
            declare(controller)
            records = controller.reconcile("db", timeout=10)
            self.assertEqual(records[0].result, ReconcileResult.RETRYABLE)
            self.assertEqual(records[0].detail, "RuntimeError")
            self.assertIs(controller.status("db").condition, Condition.DEGRADED)
        finally:
            controller.stop()

    def test_rollout_error_marks_rollout_failed(self):
        declare(self.controller, consumers=["api"])
        self.controller.reconcile("db", timeout=10)
        with mock.patch.object(self.controller.notifier, "rollout",
                               side_effect=RuntimeError("signal queue gone")):
            records = self.controller.rotate("db").result(timeout=10)
        self.assertEqual(summary(records), [(ReconcileAction.ROTATE, ReconcileResult.SUCCESS)])
        self.assertFalse(self.controller.reconciler.in_flight("db"))

        status = self.controller.status("db")
        self.assertIs(status.condition, Condition.ROLLOUT_FAILED)
        self.assertEqual(status.detail, "rollout aborted: RuntimeError")
        self.assertIs(status.rotation_state, RotationState.ROTATING)
        rollouts = [(e.result, e.version) for e in self.controller.sink.for_descriptor("db")
                    if e.action == ROLLOUT_ACTION]
        self.assertEqual(rollouts[-1], ("Fatal", 2))

        # the retry rolls the consumer onto version 3 and clears the condition
        records = self.controller.rotate("db").result(timeout=10)
        self.assertEqual(records[0].action, ReconcileAction.ROTATE)
        self.assertIs(self.controller.status("db").condition, Condition.OK)
        self.assertEqual(self.controller.store.get("db").binding("api").last_applied_version, 3)

    def test_undeclared_descriptor_is_ignored(self):
        self.assertEqual(self.controller.reconciler.reconcile_once("ghost"), [])

    def test_events_for_every_record(self):
        declare(self.controller)
        self.controller.reconcile("db", timeout=10)
        actions = [(e.action, e.result) for e in self.controller.sink.for_descriptor("db")]
        self.assertIn(("Create", "Success"), actions)


class TestCoalescing(unittest.TestCase):
    def test_triggers_during_a_pass_collapse_into_one_rerun(self):
        backend = GatedBackend()
        controller = build_controller(backend=backend)[0]
        try:
            declare(controller)
            first = controller.reconciler.trigger("db")
            self.assertTrue(backend.entered.wait(10))
            second = controller.reconciler.trigger("db")
            third = controller.reconciler.trigger("db")
            self.assertIs(second, first)
            self.assertIs(third, first)
            self.assertTrue(controller.reconciler.in_flight("db"))
            backend.release.set()
            records = first.result(timeout=10)
            self.assertEqual(summary(records), [(ReconcileAction.CREATE, ReconcileResult.SUCCESS),
                                                (ReconcileAction.NOOP, ReconcileResult.SUCCESS)])
            self.assertEqual(backend.calls.count("get"), 2)
            self.assertFalse(controller.reconciler.in_flight("db"))
        finally:
            backend.release.set()
            controller.stop()

    def test_descriptors_reconcile_independently(self):
        backend = GatedBackend()
        controller = build_controller(backend=backend)[0]
        try:
            declare(controller, name="db")
            declare(controller, name="api-key", keys=("token",))
            futures = controller.reconciler.trigger_all()
            self.assertEqual(sorted(futures), ["api-key", "db"])
            self.assertIsNot(futures["db"], futures["api-key"])
            backend.release.set()
            for future in futures.values():
                self.assertEqual(future.result(timeout=10)[0].action, ReconcileAction.CREATE)
        finally:
            backend.release.set()
            controller.stop()

    def test_declared_descriptor_is_used_unchanged(self):
        controller = build_controller()[0]
        try:
            controller.load([SecretDescriptor(name="db", backend=BackendType.VAULT_LIKE,
                                              keys=("password",),
                                              rotation_policy=RotationPolicy.manual())])
            self.assertEqual(controller.reconcile("db", timeout=10)[0].action,
                             ReconcileAction.CREATE)
        finally:
            controller.stop()

    def test_rotations_requested_during_a_pass_write_one_version(self):
        backend = GatedBackend()
        backend.release.set()
        controller = build_controller(backend=backend)[0]
        try:
            declare(controller)
            controller.reconcile("db", timeout=10)
            backend.release.clear()
            backend.entered.clear()

            pending = controller.reconciler.trigger("db")
            self.assertTrue(backend.entered.wait(10))
            self.assertIs(controller.rotate("db"), pending)
            self.assertIs(controller.rotate("db"), pending)
            backend.release.set()
            records = pending.result(timeout=10)

            self.assertEqual([r.action for r in records].count(ReconcileAction.ROTATE), 1)
            self.assertEqual(summary(records)[-1], (ReconcileAction.NOOP, ReconcileResult.SUCCESS))
            self.assertEqual([v.version for v in backend.stored_versions("db")], [1, 2])
            active = [v.version for v in controller.history.versions("db")
                      if v.state is VersionState.ACTIVE]
            self.assertEqual(active, [2])
            self.assertIs(controller.scheduler.state("db"), RotationState.IDLE)
        finally:
            backend.release.set()
            controller.stop()


class TestOperatorCommandsDuringPass(unittest.TestCase):
    def setUp(self):
        self.backend = GatedBackend()
        self.controller = build_controller(backend=self.backend)[0]
        declare(self.controller)

    def tearDown(self):
        self.backend.release.set()
        self.controller.stop()

    def test_delete_waits_for_running_pass(self):
        pending = self.controller.reconciler.trigger("db")
        self.assertTrue(self.backend.entered.wait(10))
        deleted = []
        deleter = threading.Thread(
            target=lambda: deleted.append(self.controller.delete("db", force=True)))
        deleter.start()
        deleter.join(0.2)
        self.assertTrue(deleter.is_alive())
        self.assertEqual(self.controller.store.names(), ["db"])

        self.backend.release.set()
        self.assertEqual(summary(pending.result(timeout=10)),
                         [(ReconcileAction.CREATE, ReconcileResult.SUCCESS)])
        deleter.join(10)
        self.assertEqual(deleted, [True])
        self.assertEqual(self.controller.store.names(), [])
        self.assertEqual(self.backend.stored_versions("db"), [])

        # a pass queued behind the delete finds nothing to recreate
        self.assertEqual(self.controller.reconciler.reconcile("db", timeout=10), [])
        self.assertEqual(self.backend.stored_versions("db"), [])

    def test_revoke_waits_for_running_pass(self):
        self.backend.release.set()
        self.controller.reconcile("db", timeout=10)
        self.backend.release.clear()
        self.backend.entered.clear()

        pending = self.controller.reconciler.trigger("db")
        self.assertTrue(self.backend.entered.wait(10))
        self.assertTrue(self.controller.reconciler.slot("db").locked())
        refused = []

        def revoke():
            try:
                self.controller.revoke("db", 1)
            except ValueError as e:
                refused.append(str(e))

        revoker = threading.Thread(target=revoke)
        revoker.start()
        revoker.join(0.2)
        self.assertTrue(revoker.is_alive())
        self.assertEqual(refused, [])

        self.backend.release.set()
        pending.result(timeout=10)
        revoker.join(10)
        self.assertEqual(refused, ["version 1 of db is not a superseded version"])
        self.assertFalse(self.controller.reconciler.slot("db").locked())
