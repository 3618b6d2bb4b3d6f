# -*- coding: utf-8 -*-
"""Data model shared by the controller components.

Descriptors, bindings and versions are immutable; components publish changes by
replacing records (``dataclasses.replace``) under their own locks rather than
mutating shared objects in place.
"""

import json
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Mapping, Optional, Tuple

from .exceptions import InvalidDescriptor


class BackendType(Enum):
    NATIVE = "Native"
    VAULT_LIKE = "VaultLike"
    CLOUD_MANAGER = "CloudManager"


class MountMode(Enum):
    ENV_VAR = "EnvVar"
    FILE = "File"


class VersionState(Enum):
    PENDING = "Pending"
    ACTIVE = "Active"
    SUPERSEDED = "Superseded"
    REVOKED = "Revoked"


class ReconcileAction(Enum):
    NOOP = "NoOp"
    CREATE = "Create"
    ROTATE = "Rotate"
    REVOKE = "Revoke"


class ReconcileResult(Enum):
    SUCCESS = "Success"
    RETRYABLE = "Retryable"
    FATAL = "Fatal"


class RotationState(Enum):
    IDLE = "Idle"
    DUE = "Due"
    ROTATING = "Rotating"


class Condition(Enum):
    """Health of a descriptor as seen by the operator."""

    OK = "Ok"
    DEGRADED = "Degraded"
    BLOCKED = "Blocked"
    ROTATION_STALLED = "RotationStalled"
    ROLLOUT_FAILED = "RolloutFailed"


_DURATION = re.compile(r"^\s*([0-9]+)\s*([smhdw])\s*$")
_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days", "w": "weeks"}


def utcnow():
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RotationPolicy:
    """Either a fixed rotation interval or manual only (``interval`` is None)."""

    interval: Optional[timedelta] = None

    @classmethod
    def manual(cls):
        return cls(interval=None)

    @classmethod
    def every(cls, interval):
        if interval <= timedelta(0):
            raise ValueError("rotation interval must be positive")
        return cls(interval=interval)

    @classmethod
    def parse(cls, text):
        """Parse ``Manual`` or a duration such as ``30d``, ``12h`` or ``3600s``."""
        if text is None or str(text).strip().lower() == "manual":
            return cls.manual()
        match = _DURATION.match(str(text))
        if not match:
            raise ValueError(f"unrecognised rotation policy {text!r}")
        amount, unit = match.groups()
        return cls.every(timedelta(**{_UNITS[unit]: int(amount)}))

    @property
    def is_manual(self):
        return self.interval is None

    def is_due(self, last_rotated_at, now):
        if self.is_manual or last_rotated_at is None:
            return False
        return now - last_rotated_at >= self.interval

    def __str__(self):
        if self.is_manual:
            return "Manual"
        return f"{int(self.interval.total_seconds())}s"


@dataclass(frozen=True)
class ConsumerBinding:
    consumer_id: str
    descriptor_name: str
    last_applied_version: Optional[int] = None
    mount_mode: MountMode = MountMode.ENV_VAR

    def applied(self, version):
        return replace(self, last_applied_version=version)


@dataclass(frozen=True)
class SecretDescriptor:
    name: str
    backend: BackendType
    keys: Tuple[str, ...]
    rotation_policy: RotationPolicy = field(default_factory=RotationPolicy.manual)
    consumers: Tuple[ConsumerBinding, ...] = ()
    current_version: Optional[int] = None
    last_rotated_at: Optional[datetime] = None

    @property
    def consumer_ids(self):
        return [binding.consumer_id for binding in self.consumers]

    def binding(self, consumer_id):
        for binding in self.consumers:
            if binding.consumer_id == consumer_id:
                return binding
        return None

    def validate(self):
        """Raise InvalidDescriptor if the descriptor breaks a model invariant."""
        if not isinstance(self.name, str) or not self.name.strip():
            raise InvalidDescriptor(self.name, "name must be a non-empty string")
        if not isinstance(self.backend, BackendType):
            raise InvalidDescriptor(self.name, f"unknown backend {self.backend!r}")
        if not self.keys:
            raise InvalidDescriptor(self.name, "keys must not be empty")
        if any(not isinstance(key, str) or not key for key in self.keys):
            raise InvalidDescriptor(self.name, "keys must be non-empty strings")
        if len(set(self.keys)) != len(self.keys):
            raise InvalidDescriptor(self.name, "keys must be unique")
        if not isinstance(self.rotation_policy, RotationPolicy):
            raise InvalidDescriptor(self.name, "rotation policy is missing")
        seen = set()
        for binding in self.consumers:
            if binding.descriptor_name != self.name:
                raise InvalidDescriptor(
                    self.name, f"consumer {binding.consumer_id} is bound to {binding.descriptor_name}")
            if binding.consumer_id in seen:
                raise InvalidDescriptor(self.name, f"consumer {binding.consumer_id} bound twice")
            seen.add(binding.consumer_id)
        return self


@dataclass(frozen=True)
class SecretVersion:
    descriptor_name: str
    version: int
    values: Mapping[str, bytes] = field(repr=False, compare=False)
    created_at: datetime
    state: VersionState = VersionState.ACTIVE

    @property
    def keys(self):
        return frozenset(self.values)

    def matches(self, values):
        return dict(self.values) == dict(values)

    def with_state(self, state):
        return replace(self, state=state)

    def without_values(self):
        return replace(self, values={})


@dataclass(frozen=True)
class ReconcileRecord:
    descriptor_name: str
    action: ReconcileAction
    result: ReconcileResult
    observed_version: Optional[int] = None
    desired_version: Optional[int] = None
    detail: Optional[str] = None


@dataclass(frozen=True)
class RolloutBatch:
    descriptor_name: str
    version: int
    bindings: Tuple[ConsumerBinding, ...]


@dataclass
class RolloutOutcome:
    descriptor_name: str
    version: int
    completed: bool
    applied: list = field(default_factory=list)
    pending: list = field(default_factory=list)
    failed_wave: Optional[int] = None
    unhealthy: list = field(default_factory=list)


@dataclass(frozen=True)
class DescriptorStatus:
    name: str
    rotation_state: RotationState
    condition: Condition
    current_version: Optional[int]
    last_rotated_at: Optional[datetime]
    detail: Optional[str] = None

    @property
    def state(self):
        if self.condition is not Condition.OK:
            return self.condition.value
        return self.rotation_state.value

    def as_dict(self):
        return {
            "state": self.state,
            "currentVersion": self.current_version,
            "lastRotatedAt": self.last_rotated_at.isoformat() if self.last_rotated_at else None,
        }


def encode_values(values):
    """Coerce provider output to a ``{key: bytes}`` mapping.

    Dictionaries and lists are stored as JSON, anything else as its UTF-8 text.
    """
    encoded = {}
    for key, value in values.items():
        if not isinstance(value, bytes):
            if isinstance(value, (dict, list)):
                value = json.dumps(value)
            if not isinstance(value, str):
                value = str(value)
            value = value.encode("utf8")
        encoded[key] = value
    return encoded
