# -*- coding: utf-8 -*-
"""
Shared test doubles: a settable clock, a fake monotonic timer, scripted consumer
health and a recording consumer signal.

"""

import itertools
import threading
from datetime import datetime, timedelta, timezone

from secret_rotation_controller import (AdapterRegistry, BackendType, CallbackValueProvider,
                                        CollectingEventSink, ConsumerSignal, ControllerConfig,
                                        InMemoryBackend, SecretController, ValueProviderRegistry)

START = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeTimer:
    """``monotonic`` and ``sleep`` pair where sleeping only moves the fake time on."""

    def __init__(self):
        self._lock = threading.Lock()
        self.now = 0.0
        self.sleeps = []

    def monotonic(self):
        with self._lock:
            return self.now

    def sleep(self, seconds):
        with self._lock:
            self.sleeps.append(seconds)
            self.now += seconds


class ScriptedHealth:
    """Consumers are healthy unless listed in ``unhealthy``.

    ``slow`` maps a consumer id to the number of checks it fails before it
    reports healthy.
    """

    def __init__(self, unhealthy=(), slow=None):
        self._lock = threading.Lock()
        self.unhealthy = set(unhealthy)
        self.slow = dict(slow or {})
        self.checks = []

    def __call__(self, consumer_id):
        with self._lock:
            self.checks.append(consumer_id)
            if consumer_id in self.unhealthy:
                return False
            remaining = self.slow.get(consumer_id, 0)
            if remaining > 0:
                self.slow[consumer_id] = remaining - 1
                return False
            return True


class RecordingSignal(ConsumerSignal):
    def __init__(self, failing=()):
        self._lock = threading.Lock()
        self.failing = set(failing)
        self.notified = []

    def notify(self, binding, version):
        with self._lock:
            self.notified.append((binding.consumer_id, version))
        if binding.consumer_id in self.failing:
            raise RuntimeError(f"cannot reach {binding.consumer_id}")


def counting_provider():
    """Seeds ``<key>-1`` for every key and bumps the suffix on each rotation."""
    generation = itertools.count(2)

    def seed(descriptor):
        return {key: f"{key}-1" for key in descriptor.keys}

    def generate(descriptor, current):
        n = next(generation)
        return {key: f"{key}-{n}" for key in descriptor.keys}

    return CallbackValueProvider(seed=seed, generate=generate)


def build_controller(backend=None, health=None, signal=None, clock=None, timer=None, provider=None,
                     **config):
    backend = backend or InMemoryBackend(backend_type=BackendType.VAULT_LIKE)
    health = health or ScriptedHealth()
    signal = signal or RecordingSignal()
    clock = clock or FakeClock()
    timer = timer or FakeTimer()
    settings = {"wave_size": 2, "wave_timeout": 30.0, "health_poll_interval": 5.0}
    settings.update(config)
    controller = SecretController(adapters=AdapterRegistry([backend]),
                                  providers=ValueProviderRegistry(default=provider or counting_provider()),
                                  is_healthy=health,
                                  signal=signal,
                                  config=ControllerConfig(**settings),
                                  sink=CollectingEventSink(),
                                  clock=clock,
                                  sleep=timer.sleep,
                                  monotonic=timer.monotonic)
    return controller, backend, health, signal, clock, timer
