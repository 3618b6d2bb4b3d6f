# -*- coding: utf-8 -*-
"""Backend adapter contract.

Every store exposes the same capability set:

get     - the current version of a secret or ``SecretNotFound``
put     - store values as a new version; identical values return the current
          version unchanged so reconcile retries cannot cause rotation storms
delete  - remove the secret, ``False`` if it was not there
revoke  - invalidate the material of an old version where the store supports it

Transient failures raise ``Unavailable`` and permission failures ``Denied``.
Neither ever carries secret values in its message.
"""

import base64
import binascii
import logging
import threading
from abc import ABC, abstractmethod

from .exceptions import BackendError, ConfigError, Denied, SecretNotFound, Unavailable
from .models import BackendType, SecretVersion, VersionState, utcnow


class SecretBackendAdapter(ABC):
    backend_type = None

    @property
    def label(self):
        return self.backend_type.value if self.backend_type else type(self).__name__

    @abstractmethod
    def get(self, name):
        """Return the current ``SecretVersion`` of ``name``."""

    @abstractmethod
    def put(self, name, values):
        """Store ``values`` and return the resulting ``SecretVersion``."""

    @abstractmethod
    def delete(self, name):
        """Delete ``name`` and every version, returning False if it did not exist."""

    def revoke(self, name, version):
        """Invalidate the stored material of ``version``. Stores without history ignore it."""
        return None

    def _not_found(self, name):
        return SecretNotFound(self.label, name)

    def _unavailable(self, operation, name, error):
        return Unavailable(self.label, operation, name, _describe(error))

    def _denied(self, operation, name, error):
        return Denied(self.label, operation, name, _describe(error))

    def _failed(self, operation, name, error):
        return BackendError(self.label, operation, name, _describe(error))


def _describe(error):
    # Class name plus status only; client errors can echo request bodies.
    status = getattr(error, "status", None) or getattr(error, "code", None)
    if status:
        return f"{type(error).__name__} ({status})"
    return type(error).__name__


def values_to_text(values):
    return {key: base64.b64encode(value).decode("ascii") for key, value in values.items()}


def values_from_text(mapping):
    try:
        return {key: base64.b64decode(value, validate=True) for key, value in mapping.items()}
    except (binascii.Error, TypeError, ValueError):
        raise ValueError("stored secret fields are not base64 encoded") from None


class InMemoryBackend(SecretBackendAdapter):
    """A process local store.

    ``fail_with`` lets a caller inject a failure for the next calls of an
    operation, e.g. ``backend.fail_with("put", Denied(...))``.
    """

    def __init__(self, backend_type=BackendType.NATIVE):
        self.backend_type = backend_type
        self._lock = threading.Lock()
        self._versions = {}
        self._counters = {}
        self._failures = {}
        self.calls = []

    def fail_with(self, operation, error, times=None):
        with self._lock:
            self._failures[operation] = [error, times]

    def clear_failures(self):
        with self._lock:
            self._failures.clear()

    def _check_failure(self, operation):
        with self._lock:
            self.calls.append(operation)
            failure = self._failures.get(operation)
            if failure is None:
                return
            error, times = failure
            if times is not None:
                failure[1] = times - 1
                if failure[1] <= 0:
                    del self._failures[operation]
        raise error

    def get(self, name):
        self._check_failure("get")
        with self._lock:
            versions = [v for v in self._versions.get(name, []) if v.state is not VersionState.REVOKED]
            if not versions:
                raise self._not_found(name)
            return versions[-1]

    def put(self, name, values):
        self._check_failure("put")
        values = dict(values)
        with self._lock:
            versions = self._versions.setdefault(name, [])
            live = [v for v in versions if v.state is not VersionState.REVOKED]
            if live and live[-1].matches(values):
                return live[-1]
            number = self._counters.get(name, 0) + 1
            self._counters[name] = number
            version = SecretVersion(descriptor_name=name, version=number, values=values,
                                    created_at=utcnow(), state=VersionState.ACTIVE)
            versions.append(version)
        logging.getLogger(__name__).debug(f"Stored version {number} of {name} in memory")
        return version

    def delete(self, name):
        self._check_failure("delete")
        with self._lock:
            return self._versions.pop(name, None) is not None

    def revoke(self, name, version):
        self._check_failure("revoke")
        with self._lock:
            versions = self._versions.get(name, [])
            for index, record in enumerate(versions):
                if record.version == version:
                    versions[index] = record.with_state(VersionState.REVOKED).without_values()

    def stored_versions(self, name):
        with self._lock:
            return list(self._versions.get(name, []))


class AdapterRegistry:
    """Maps each backend type to the adapter serving it."""

    def __init__(self, adapters=None):
        self._adapters = {}
        for adapter in adapters or ():
            self.register(adapter)

    def register(self, adapter, backend_type=None):
        backend_type = backend_type or adapter.backend_type
        if not isinstance(backend_type, BackendType):
            raise ConfigError("backend", f"adapter {type(adapter).__name__} has no backend type")
        self._adapters[backend_type] = adapter
        return adapter

    def for_backend(self, backend_type):
        try:
            return self._adapters[backend_type]
        except KeyError:
            raise ConfigError("backend", f"no adapter registered for {backend_type.value}") from None

    def for_descriptor(self, descriptor):
        return self.for_backend(descriptor.backend)

    def __contains__(self, backend_type):
        return backend_type in self._adapters
