# -*- coding: utf-8 -*-
"""Staged rollout of a new secret version to its consumers.

Bindings are signalled a wave at a time. A wave is done once every consumer in
it reports healthy; only then are their ``last_applied_version`` values moved to
the new version and the next wave started. A wave that is not healthy within
``wave_timeout`` halts the rollout. Waves already done stay on the new
version, there is no automatic rollback.
"""

import logging
import time
from abc import ABC, abstractmethod

from .events import WAVE_ACTION, Event
from .models import ReconcileResult, RolloutOutcome, utcnow


class ConsumerSignal(ABC):
    """Tells a consumer that a new version of a secret it uses is available."""

    @abstractmethod
    def notify(self, binding, version):
        pass


class PassiveSignal(ConsumerSignal):
    """For consumers that pick up new material on their own, e.g. watched file mounts."""

    def notify(self, binding, version):
        return None


def waves(bindings, size):
    bindings = list(bindings)
    return [bindings[index:index + size] for index in range(0, len(bindings), size)]


class ConsumerNotifier:

    def __init__(self, store, is_healthy, signal=None, wave_size=2, wave_timeout=300.0,
                 poll_interval=5.0, emit=None, sleep=time.sleep, monotonic=time.monotonic,
                 clock=utcnow):
        """
        :param store: ``DescriptorStore`` receiving applied versions
        :param is_healthy: ``callable(consumer_id) -> bool`` from the orchestrator
        :param signal: ``ConsumerSignal`` used to make consumers reload
        """
        self._store = store
        self._is_healthy = is_healthy
        self._signal = signal or PassiveSignal()
        self._wave_size = wave_size
        self._wave_timeout = wave_timeout
        self._poll_interval = poll_interval
        self._emit = emit or (lambda event: None)
        self._sleep = sleep
        self._monotonic = monotonic
        self._clock = clock

    def _healthy(self, consumer_id):
        try:
            return bool(self._is_healthy(consumer_id))
        except Exception:
            logging.getLogger(__name__).exception(f"Health check of {consumer_id} failed")
            return False

    def _wave_event(self, batch, index, result, detail):
        self._emit(Event(timestamp=self._clock(), descriptor_name=batch.descriptor_name,
                         action=WAVE_ACTION, result=result.value, version=batch.version,
                         detail=f"wave {index}: {detail}"))

    def _signal_wave(self, batch, wave):
        failed = []
        for binding in wave:
            try:
                self._signal.notify(binding, batch.version)
            except Exception:
                logging.getLogger(__name__).exception(
                    f"Could not signal {binding.consumer_id} about {batch.descriptor_name} "
                    f"version {batch.version}")
                failed.append(binding.consumer_id)
        return failed

    def _await_healthy(self, consumer_ids):
        pending = set(consumer_ids)
        deadline = self._monotonic() + self._wave_timeout
        while True:
            for consumer_id in sorted(pending):
                if self._healthy(consumer_id):
                    pending.discard(consumer_id)
            remaining = deadline - self._monotonic()
            if not pending or remaining <= 0:
                return sorted(pending)
            self._sleep(min(self._poll_interval, remaining))

    def rollout(self, batch):
        """Roll ``batch`` out wave by wave and return a ``RolloutOutcome``."""
        outcome = RolloutOutcome(descriptor_name=batch.descriptor_name, version=batch.version,
                                 completed=False)
        planned = waves(batch.bindings, self._wave_size)
        log = logging.getLogger(__name__)
        for index, wave in enumerate(planned, start=1):
            consumer_ids = [binding.consumer_id for binding in wave]
            log.info(f"Rolling {batch.descriptor_name} version {batch.version} "
                     f"wave {index}/{len(planned)} to {', '.join(consumer_ids)}")
            unhealthy = self._signal_wave(batch, wave)
            if not unhealthy:
                unhealthy = self._await_healthy(consumer_ids)
            if unhealthy:
                outcome.failed_wave = index
                outcome.unhealthy = unhealthy
                outcome.pending = [binding.consumer_id for later in planned[index - 1:]
                                   for binding in later]
                self._wave_event(batch, index, ReconcileResult.FATAL,
                                 f"not healthy: {', '.join(unhealthy)}")
                return outcome
            self._store.record_applied(batch.descriptor_name, consumer_ids, batch.version)
            outcome.applied.extend(consumer_ids)
            self._wave_event(batch, index, ReconcileResult.SUCCESS,
                             f"healthy: {', '.join(consumer_ids)}")
        outcome.completed = True
        return outcome
