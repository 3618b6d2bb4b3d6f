# -*- coding: utf-8 -*-
"""This module wires the controller together and exposes its operator commands.

"""

import logging
import threading
import time
import weakref
from datetime import datetime, timedelta, timezone

from .config import ControllerConfig
from .descriptors import DescriptorStore, parse_declarations
from .events import ADMIN_ACTION, Event, LoggingEventSink
from .exceptions import VersionStillReferenced
from .models import (Condition, DescriptorStatus, ReconcileResult, SecretDescriptor, VersionState,
                     utcnow)
from .notifier import ConsumerNotifier
from .reconciler import Reconciler
from .scheduler import RotationScheduler
from .status import ConditionBoard
from .versions import VersionHistory


# The loop only holds a weak reference so a controller nobody uses any more
# can be collected and its thread ends with it.

def _background_control_loop(controller_weak_ref, stop):
    """
    Drives periodic reconcile ticks and rotation sweeps
    :param controller_weak_ref: weak reference to the controller
    :param stop: threading.Event ending the loop
    :return: None
    """
    controller = controller_weak_ref()
    if controller is None:
        return
    config = controller.config
    pause = min(config.sweep_interval, config.reconcile_interval)
    last_sweep = datetime.now(timezone.utc) - timedelta(seconds=config.sweep_interval)
    last_tick = datetime.now(timezone.utc) - timedelta(seconds=config.reconcile_interval)
    del controller

    while not stop.is_set():
        controller = controller_weak_ref()
        if controller is None:
            break
        try:
            now = datetime.now(timezone.utc)
            if (now - last_sweep).total_seconds() >= config.sweep_interval:
                controller.sweep()
                last_sweep = now
            if (now - last_tick).total_seconds() >= config.reconcile_interval:
                controller.reconciler.trigger_all()
                last_tick = now
        except Exception:
            logging.getLogger(__name__).exception("Control loop iteration failed")
        # drop the reference so the controller can be collected while we wait
        del controller
        stop.wait(pause)


class SecretController:
    """Reconciles declared secrets against their backends and rolls new versions out.

    Attributes:
        store (DescriptorStore): declared descriptors.
        history (VersionHistory): per descriptor version records.
        conditions (ConditionBoard): operator visible conditions.
        scheduler (RotationScheduler): rotation state machine.
        notifier (ConsumerNotifier): staged consumer rollout.
        reconciler (Reconciler): keyed worker pool running reconcile passes.
    """

    def __init__(self, adapters, providers, is_healthy, signal=None, config=None, sink=None,
                 store=None, clock=utcnow, sleep=time.sleep, monotonic=time.monotonic):
        """Initializes the controller.

        Args:
            adapters (AdapterRegistry): adapters for the backends in use.
            providers (ValueProviderRegistry): sources of seed and rotation values.
            is_healthy (callable): ``is_healthy(consumer_id) -> bool`` health callback.
            signal (ConsumerSignal, optional): makes consumers reload, defaults to
                passive consumers that reload on their own.
            config (ControllerConfig, optional): tuning, defaults to ``ControllerConfig()``.
            sink (EventSink, optional): event output, defaults to JSON log lines.
            store (DescriptorStore, optional): pre-populated descriptor store.
            clock (callable, optional): current aware datetime, for tests.
            sleep (callable, optional): used for retry backoff and health polling.
            monotonic (callable, optional): used for wave timeouts.
        """
        self.config = config or ControllerConfig()
        self.sink = sink or LoggingEventSink()
        self.store = store or DescriptorStore()
        self.history = VersionHistory()
        self.conditions = ConditionBoard()
        self.adapters = adapters
        self.providers = providers
        self._clock = clock
        self.scheduler = RotationScheduler(self.store, self.conditions,
                                           rollout_deadline=self.config.rollout_deadline,
                                           emit=self.sink.emit, clock=clock)
        self.notifier = ConsumerNotifier(self.store, is_healthy, signal=signal,
                                         wave_size=self.config.wave_size,
                                         wave_timeout=self.config.wave_timeout,
                                         poll_interval=self.config.health_poll_interval,
                                         emit=self.sink.emit, sleep=sleep, monotonic=monotonic,
                                         clock=clock)
        self.reconciler = Reconciler(self.store, adapters, self.history, providers, self.scheduler,
                                     self.notifier, self.conditions,
                                     workers=self.config.workers,
                                     max_attempts=self.config.max_attempts,
                                     backoff_multiplier=self.config.backoff_multiplier,
                                     backoff_max=self.config.backoff_max,
                                     emit=self.sink.emit, sleep=sleep, clock=clock)
        self.scheduler.bind(self.reconciler.trigger)
        self._stop = threading.Event()
        self._thread = None

    # -- declarations ------------------------------------------------------------------------

    def declare(self, descriptor):
        if not isinstance(descriptor, SecretDescriptor):
            descriptor = parse_declarations([descriptor])[0]
        return self.store.upsert(descriptor)

    def load(self, declarations, prune=False):
        """Apply a full set of declarations, as read at startup or on reload.

        The whole set is validated before anything is committed. With ``prune``,
        descriptors missing from the set are removed unless consumers are still
        bound to them.
        """
        if isinstance(declarations, dict):
            declarations = declarations.get("secrets", [])
        declarations = list(declarations)
        if all(isinstance(d, SecretDescriptor) for d in declarations):
            descriptors = [d.validate() for d in declarations]
        else:
            descriptors = parse_declarations(declarations)
        for descriptor in descriptors:
            self.store.upsert(descriptor)
        if prune:
            declared = {d.name for d in descriptors}
            for name in self.store.names():
                if name in declared:
                    continue
                if self.store.get(name).consumers:
                    logging.getLogger(__name__).warning(
                        f"{name} is no longer declared but still has consumers, keeping it")
                    continue
                with self.reconciler.slot(name):
                    self.store.remove(name)
                    self._forget(name)
        return [d.name for d in descriptors]

    def delete(self, name, force=False):
        """Remove a descriptor and its backend secret.

        Fails with ConsumersStillBound while consumers are bound, unless forced.
        Waits for a reconcile pass over ``name`` that is already running.
        """
        with self.reconciler.slot(name):
            descriptor = self.store.remove(name, force=force)
            adapter = self.adapters.for_descriptor(descriptor)
            existed = self.reconciler.call_backend(adapter.delete, name)
            self._forget(name)
        self._admin_event(name, ReconcileResult.SUCCESS,
                          "deleted" if existed else "deleted, backend held no secret")
        return existed

    def _forget(self, name):
        self.history.forget(name)
        self.scheduler.forget(name)
        self.conditions.forget(name)

    # -- reconciliation ----------------------------------------------------------------------

    def reconcile(self, name, timeout=None):
        """Run (or join) a reconcile pass for ``name`` and wait for its records."""
        self.store.get(name)
        return self.reconciler.reconcile(name, timeout=timeout)

    def reconcile_all(self, timeout=None):
        futures = self.reconciler.trigger_all()
        return {name: future.result(timeout=timeout) for name, future in futures.items()}

    def sweep(self, now=None):
        return self.scheduler.sweep(now=now)

    # -- operator commands -------------------------------------------------------------------

    def _admin_event(self, name, result, detail, version=None):
        self.sink.emit(Event(timestamp=self._clock(), descriptor_name=name, action=ADMIN_ACTION,
                             result=result.value, version=version, detail=detail))

    def rotate(self, name):
        """Force ``name`` Due now. Returns the future of the reconcile pass."""
        return self.scheduler.request_rotation(name, reason="operator")

    def signal_compromise(self, name):
        return self.scheduler.signal_compromise(name)

    def block(self, name, reason="blocked by operator"):
        self.store.get(name)
        self.conditions.set(name, Condition.BLOCKED, reason)
        self._admin_event(name, ReconcileResult.SUCCESS, "blocked")

    def unblock(self, name):
        """Clear any operator condition and reconcile ``name`` again.

        An unfinished rotation (failed or stalled rollout) is dropped; a new
        ``rotate`` starts a fresh one.
        """
        self.store.get(name)
        previous = self.conditions.clear(name)
        self.scheduler.reset(name)
        self._admin_event(name, ReconcileResult.SUCCESS, f"cleared {previous.value}")
        return self.reconciler.trigger(name)

    def status(self, name):
        descriptor = self.store.get(name)
        condition, detail = self.conditions.get(name)
        return DescriptorStatus(name=name,
                                rotation_state=self.scheduler.state(name),
                                condition=condition,
                                current_version=descriptor.current_version,
                                last_rotated_at=descriptor.last_rotated_at,
                                detail=detail)

    def revoke(self, name, version, force=False):
        """Revoke a superseded version ahead of time.

        Refuses with VersionStillReferenced while consumers still run it, unless
        ``force`` is set; the consumers affected are logged and returned.
        """
        with self.reconciler.slot(name):
            descriptor = self.store.get(name)
            record = self.history.get(name, version)
            if record is None or record.state is VersionState.ACTIVE:
                raise ValueError(f"version {version} of {name} is not a superseded version")
            referencing = self.history.referencing(name, version, descriptor.consumers)
            if referencing and not force:
                raise VersionStillReferenced(name, version, referencing)
            adapter = self.adapters.for_descriptor(descriptor)
            self.reconciler.call_backend(adapter.revoke, name, version)
            affected = self.history.revoke(name, version, descriptor.consumers, force=force)
        detail = f"revoked early, consumers affected: {', '.join(affected)}" if affected else "revoked"
        self._admin_event(name, ReconcileResult.SUCCESS, detail, version=version)
        return affected

    # -- lifecycle ---------------------------------------------------------------------------

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        t = threading.Thread(target=_background_control_loop,
                             name="secret_rotation_control_loop",
                             args=[weakref.ref(self), self._stop])
        t.daemon = True
        t.start()
        self._thread = t

    def stop(self, wait=True):
        self._stop.set()
        if self._thread is not None and wait:
            self._thread.join()
        self._thread = None
        self.reconciler.shutdown(wait=wait)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
