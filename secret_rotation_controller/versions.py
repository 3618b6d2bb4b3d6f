# -*- coding: utf-8 -*-
"""Per descriptor ``SecretVersion`` history.

Only the Active record keeps secret values. As soon as a version is superseded
its record is replaced by a copy without values, so old material does not
linger in memory after the next ``put``.
"""

import logging
import threading

from .exceptions import VersionStillReferenced
from .models import VersionState


class VersionHistory:

    def __init__(self):
        self._lock = threading.Lock()
        self._versions = {}

    def versions(self, name):
        with self._lock:
            return sorted(self._versions.get(name, {}).values(), key=lambda v: v.version)

    def get(self, name, version):
        with self._lock:
            return self._versions.get(name, {}).get(version)

    def active(self, name):
        with self._lock:
            return self._active_locked(name)

    def _active_locked(self, name):
        for record in self._versions.get(name, {}).values():
            if record.state is VersionState.ACTIVE:
                return record
        return None

    def activate(self, version):
        """Record ``version`` as the Active one, superseding any other Active version.

        Returns the version that was superseded, if any.
        """
        superseded = None
        with self._lock:
            records = self._versions.setdefault(version.descriptor_name, {})
            known = records.get(version.version)
            if known is not None and known.state is VersionState.REVOKED:
                logging.getLogger(__name__).warning(
                    f"Backend reports revoked version {version.version} of "
                    f"{version.descriptor_name} as current")
            for number, record in list(records.items()):
                if record.state is VersionState.ACTIVE and number != version.version:
                    superseded = record.with_state(VersionState.SUPERSEDED).without_values()
                    records[number] = superseded
            records[version.version] = version.with_state(VersionState.ACTIVE)
        if superseded is not None:
            logging.getLogger(__name__).info(
                f"Version {superseded.version} of {version.descriptor_name} superseded "
                f"by {version.version}")
        return superseded

    def referencing(self, name, version, bindings):
        return [b.consumer_id for b in bindings if b.last_applied_version == version]

    def revocable(self, name, bindings):
        """Superseded versions that no binding still has applied."""
        in_use = {b.last_applied_version for b in bindings}
        with self._lock:
            return sorted(
                number for number, record in self._versions.get(name, {}).items()
                if record.state is VersionState.SUPERSEDED and number not in in_use)

    def revoke(self, name, version, bindings, force=False):
        """Move a Superseded version to Revoked.

        Raises VersionStillReferenced if consumers still run it and ``force`` is
        not set. Returns the consumer ids that were still referencing it.
        """
        referencing = self.referencing(name, version, bindings)
        if referencing and not force:
            raise VersionStillReferenced(name, version, referencing)
        with self._lock:
            record = self._versions.get(name, {}).get(version)
            if record is None:
                raise KeyError(f"{name} has no recorded version {version}")
            if record.state is VersionState.ACTIVE:
                raise ValueError(f"version {version} of {name} is active and cannot be revoked")
            if record.state is not VersionState.REVOKED:
                self._versions[name][version] = record.with_state(VersionState.REVOKED)
        if referencing:
            logging.getLogger(__name__).warning(
                f"Version {version} of {name} revoked while still applied by "
                f"{', '.join(referencing)}")
        return referencing

    def forget(self, name):
        with self._lock:
            self._versions.pop(name, None)
