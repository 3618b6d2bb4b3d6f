# -*- coding: utf-8 -*-
"""Rotation scheduling.

Each descriptor moves through ``Idle -> Due -> Rotating -> Idle``:

Idle      nothing to do until the rotation interval has elapsed since
          ``last_rotated_at``
Due       interval elapsed, compromise signal or operator ``rotate``; the
          reconciler will take the Rotate path on its next pass
Rotating  the new version is written and consumers are being rolled; ends when
          the notifier reports every binding on the new version

The sweep never writes secrets itself. It only flips scheduler state and
enqueues a reconcile, so it does not contend with in-flight reconciles.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from .events import ROTATION_ACTION, Event
from .exceptions import RotationStalled
from .models import Condition, ReconcileResult, RotationState, utcnow


@dataclass
class _Rotation:
    state: RotationState = RotationState.IDLE
    reason: Optional[str] = None
    version: Optional[int] = None
    started_at: object = None


class RotationScheduler:

    def __init__(self, store, conditions, rollout_deadline, enqueue=None, emit=None, clock=utcnow):
        """
        :param store: the ``DescriptorStore``
        :param conditions: the shared ``ConditionBoard``
        :param rollout_deadline: seconds a rotation may spend in Rotating
        :param enqueue: ``callable(name)`` asking for a reconcile pass
        :param emit: ``callable(Event)``
        :param clock: returns the current aware datetime
        """
        self._store = store
        self._conditions = conditions
        self._deadline = timedelta(seconds=rollout_deadline)
        self._enqueue = enqueue
        self._emit = emit or (lambda event: None)
        self._clock = clock
        self._lock = threading.Lock()
        self._rotations = {}

    def bind(self, enqueue):
        self._enqueue = enqueue

    def _entry(self, name):
        return self._rotations.setdefault(name, _Rotation())

    def state(self, name):
        with self._lock:
            return self._rotations.get(name, _Rotation()).state

    def is_due(self, name):
        return self.state(name) is RotationState.DUE

    def _event(self, name, result, version=None, detail=None):
        self._emit(Event(timestamp=self._clock(), descriptor_name=name, action=ROTATION_ACTION,
                         result=result.value, version=version, detail=detail))

    def sweep(self, now=None):
        """Check every descriptor once. Returns the names enqueued for rotation."""
        now = now or self._clock()
        enqueued = []
        for descriptor in self._store.list():
            name = descriptor.name
            if self._conditions.needs_operator(name):
                continue
            with self._lock:
                entry = self._entry(name)
                if entry.state is RotationState.IDLE:
                    if descriptor.rotation_policy.is_due(descriptor.last_rotated_at, now):
                        entry.state = RotationState.DUE
                        entry.reason = "interval"
                        enqueued.append(name)
                elif entry.state is RotationState.DUE:
                    # still waiting, e.g. the last attempt left it Degraded
                    enqueued.append(name)
                elif entry.started_at is not None and now - entry.started_at >= self._deadline:
                    stalled = RotationStalled(name, entry.version, self._deadline)
                    self._conditions.set(name, Condition.ROTATION_STALLED, str(stalled))
                    self._event(name, ReconcileResult.FATAL, entry.version, str(stalled))
        for name in enqueued:
            logging.getLogger(__name__).info(f"Rotation of {name} is due")
            self._request(name)
        return enqueued

    def _request(self, name):
        if self._enqueue is not None:
            return self._enqueue(name)
        return None

    def request_rotation(self, name, reason="operator"):
        """Make ``name`` Due now regardless of its interval and enqueue a reconcile."""
        self._store.get(name)
        with self._lock:
            entry = self._entry(name)
            entry.state = RotationState.DUE
            entry.reason = reason
        logging.getLogger(__name__).info(f"Rotation of {name} requested ({reason})")
        self._event(name, ReconcileResult.SUCCESS, detail=f"due: {reason}")
        return self._request(name)

    def signal_compromise(self, name):
        logging.getLogger(__name__).warning(f"Compromise reported for {name}, rotating immediately")
        return self.request_rotation(name, reason="compromise")

    def rotation_started(self, name, version):
        with self._lock:
            entry = self._entry(name)
            entry.state = RotationState.ROTATING
            entry.version = version
            entry.started_at = self._clock()

    def rollout_completed(self, name, version):
        """All bindings run ``version``. Ends a rotation or stamps a fresh secret."""
        now = self._clock()
        with self._lock:
            entry = self._entry(name)
            finished = entry.state is RotationState.ROTATING and entry.version == version
            if finished:
                self._rotations[name] = _Rotation()
        if finished:
            self._store.set_last_rotated_at(name, now)
            self._conditions.clear(name, only=(Condition.ROTATION_STALLED,
                                                Condition.ROLLOUT_FAILED))
            self._event(name, ReconcileResult.SUCCESS, version, "rotation complete")
            logging.getLogger(__name__).info(f"Rotation of {name} to version {version} complete")
        elif self._store.get(name).last_rotated_at is None:
            self._store.set_last_rotated_at(name, now)

    def adopt(self, name, created_at):
        """Use an observed version's creation time when no rotation time is declared."""
        if self._store.get(name).last_rotated_at is None and created_at is not None:
            self._store.set_last_rotated_at(name, created_at)

    def reset(self, name):
        """Drop an unfinished rotation. A pending Due request is kept."""
        with self._lock:
            entry = self._rotations.get(name)
            if entry is not None and entry.state is RotationState.ROTATING:
                self._rotations[name] = _Rotation()

    def forget(self, name):
        with self._lock:
            self._rotations.pop(name, None)
