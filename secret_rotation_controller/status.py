# -*- coding: utf-8 -*-
"""Operator visible conditions per descriptor.

Degraded clears itself on the next successful reconcile. Blocked,
RotationStalled and RolloutFailed stay until an operator clears them, and a
transient failure never replaces them with Degraded.
"""

import logging
import threading

from .models import Condition

OPERATOR_CONDITIONS = (Condition.BLOCKED, Condition.ROTATION_STALLED, Condition.ROLLOUT_FAILED)


class ConditionBoard:

    def __init__(self):
        self._lock = threading.Lock()
        self._conditions = {}

    def get(self, name):
        with self._lock:
            return self._conditions.get(name, (Condition.OK, None))

    def condition(self, name):
        return self.get(name)[0]

    def set(self, name, condition, detail=None):
        with self._lock:
            previous = self._conditions.get(name, (Condition.OK, None))[0]
            self._store(name, condition, detail)
        self._log_transition(name, previous, condition, detail)
        return previous

    def degrade(self, name, detail):
        """Flag ``name`` Degraded unless an operator condition is showing.

        Returns the condition in force afterwards.
        """
        with self._lock:
            previous = self._conditions.get(name, (Condition.OK, None))[0]
            if previous in OPERATOR_CONDITIONS:
                kept = True
            else:
                kept = False
                self._store(name, Condition.DEGRADED, detail)
        if kept:
            logging.getLogger(__name__).info(
                f"{name} stays {previous.value}, transient failure: {detail}")
            return previous
        self._log_transition(name, previous, Condition.DEGRADED, detail)
        return Condition.DEGRADED

    def clear(self, name, only=None):
        """Reset to OK, or only when the current condition is one of ``only``."""
        with self._lock:
            previous = self._conditions.get(name, (Condition.OK, None))[0]
            if only is not None and previous not in only:
                return previous
            self._store(name, Condition.OK)
        self._log_transition(name, previous, Condition.OK)
        return previous

    def is_blocked(self, name):
        return self.condition(name) is Condition.BLOCKED

    def needs_operator(self, name):
        return self.condition(name) in OPERATOR_CONDITIONS

    def forget(self, name):
        with self._lock:
            self._conditions.pop(name, None)

    def _store(self, name, condition, detail=None):
        if condition is Condition.OK:
            self._conditions.pop(name, None)
        else:
            self._conditions[name] = (condition, detail)

    @staticmethod
    def _log_transition(name, previous, condition, detail=None):
        if previous is condition:
            return
        log = logging.getLogger(__name__)
        if condition is Condition.OK:
            log.info(f"{name} condition cleared from {previous.value}")
        else:
            log.warning(f"{name} is {condition.value}: {detail}")
