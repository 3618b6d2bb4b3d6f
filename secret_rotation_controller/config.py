# -*- coding: utf-8 -*-
"""Controller tuning.

Settings come from a JSON style mapping (for example the ``config`` blob stored
next to the declarations) or from ``SRC_*`` environment variables, e.g.
``SRC_WAVE_SIZE=2`` or ``SRC_ROLLOUT_DEADLINE=3600``. Durations are seconds.
"""

import os
from dataclasses import dataclass, fields

from .exceptions import ConfigError

ENV_PREFIX = "SRC_"


@dataclass(frozen=True)
class ControllerConfig:
    workers: int = 4
    max_attempts: int = 5
    backoff_multiplier: float = 0.5
    backoff_max: float = 30.0
    wave_size: int = 2
    wave_timeout: float = 300.0
    health_poll_interval: float = 5.0
    rollout_deadline: float = 3600.0
    sweep_interval: float = 300.0
    reconcile_interval: float = 60.0

    def __post_init__(self):
        for name in ("workers", "max_attempts", "wave_size"):
            if getattr(self, name) < 1:
                raise ConfigError(name, "must be at least 1")
        for name in ("wave_timeout", "rollout_deadline", "sweep_interval", "reconcile_interval",
                     "health_poll_interval"):
            if getattr(self, name) <= 0:
                raise ConfigError(name, "must be positive")
        for name in ("backoff_multiplier", "backoff_max"):
            if getattr(self, name) < 0:
                raise ConfigError(name, "must not be negative")

    @classmethod
    def from_mapping(cls, mapping):
        known = {f.name: f.type for f in fields(cls)}
        kwargs = {}
        for key, value in (mapping or {}).items():
            if key not in known:
                raise ConfigError(key, "unknown setting")
            kwargs[key] = _convert(key, known[key], value)
        return cls(**kwargs)

    @classmethod
    def from_env(cls, environ=None):
        environ = os.environ if environ is None else environ
        mapping = {}
        for f in fields(cls):
            env_name = ENV_PREFIX + f.name.upper()
            if env_name in environ:
                mapping[f.name] = environ[env_name]
        return cls.from_mapping(mapping)


def _convert(name, kind, value):
    target = int if kind in (int, "int") else float
    try:
        return target(value)
    except (TypeError, ValueError):
        raise ConfigError(name, f"expected {target.__name__}") from None
