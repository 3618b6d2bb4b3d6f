# -*- coding: utf-8 -*-
"""Declared desired state.

Declarations are plain records, one per logical secret::

    {
        "name": "db-credentials",
        "backend": "VaultLike",                 # Native | VaultLike | CloudManager
        "keys": ["username", "password", "database-url"],
        "rotationPolicy": "30d",                # or "Manual"
        "lastRotatedAt": "2024-01-01T00:00:00Z",   # optional
        "consumers": [
            "payments/api",                     # EnvVar mount, nothing applied yet
            {"consumerId": "payments/worker", "mountMode": "File", "lastAppliedVersion": 3}
        ]
    }

They can be read from a local JSON file or from a JSON object in a storage
bucket.
"""

import json
import logging
import threading
from dataclasses import replace

import pytz
from dateutil import parser
from google.cloud import storage

from .exceptions import ConsumersStillBound, DescriptorNotFound, InvalidDescriptor
from .models import BackendType, ConsumerBinding, MountMode, RotationPolicy, SecretDescriptor


class DescriptorStore:
    """Thread safe mapping of descriptor name to ``SecretDescriptor``.

    Every write validates the candidate before it is committed so a rejected
    descriptor never leaves the store half updated.
    """

    def __init__(self, descriptors=None):
        self._lock = threading.RLock()
        self._descriptors = {}
        for descriptor in descriptors or ():
            self.upsert(descriptor)

    def list(self):
        with self._lock:
            return [self._descriptors[name] for name in sorted(self._descriptors)]

    def names(self):
        with self._lock:
            return sorted(self._descriptors)

    def get(self, name):
        with self._lock:
            try:
                return self._descriptors[name]
            except KeyError:
                raise DescriptorNotFound(name) from None

    def __contains__(self, name):
        with self._lock:
            return name in self._descriptors

    def upsert(self, descriptor):
        """Validate and commit a declared descriptor.

        Runtime fields (``current_version``, ``last_rotated_at``) and the applied
        versions of bindings that are already known survive a re-declaration,
        unless the new declaration states them explicitly.
        """
        descriptor.validate()
        with self._lock:
            existing = self._descriptors.get(descriptor.name)
            if existing is not None:
                descriptor = _carry_runtime_state(existing, descriptor)
            self._descriptors[descriptor.name] = descriptor
        logging.getLogger(__name__).info(
            f"Declared secret {descriptor.name} on {descriptor.backend.value} "
            f"with {len(descriptor.consumers)} consumers")
        return descriptor

    def remove(self, name, force=False):
        with self._lock:
            descriptor = self.get(name)
            if descriptor.consumers and not force:
                raise ConsumersStillBound(name, descriptor.consumer_ids)
            del self._descriptors[name]
        if descriptor.consumers:
            logging.getLogger(__name__).warning(
                f"Forced removal of {name} with consumers {', '.join(descriptor.consumer_ids)}")
        return descriptor

    def bind(self, name, consumer_id, mount_mode=MountMode.ENV_VAR):
        with self._lock:
            descriptor = self.get(name)
            if descriptor.binding(consumer_id) is not None:
                return descriptor
            binding = ConsumerBinding(consumer_id=consumer_id, descriptor_name=name,
                                      mount_mode=mount_mode)
            return self._commit(replace(descriptor, consumers=descriptor.consumers + (binding,)))

    def unbind(self, name, consumer_id):
        with self._lock:
            descriptor = self.get(name)
            consumers = tuple(b for b in descriptor.consumers if b.consumer_id != consumer_id)
            return self._commit(replace(descriptor, consumers=consumers))

    def set_current_version(self, name, version):
        with self._lock:
            return self._commit(replace(self.get(name), current_version=version))

    def set_last_rotated_at(self, name, when):
        with self._lock:
            return self._commit(replace(self.get(name), last_rotated_at=when))

    def record_applied(self, name, consumer_ids, version):
        """Mark the given consumers as running ``version``."""
        consumer_ids = set(consumer_ids)
        with self._lock:
            descriptor = self.get(name)
            consumers = tuple(b.applied(version) if b.consumer_id in consumer_ids else b
                              for b in descriptor.consumers)
            return self._commit(replace(descriptor, consumers=consumers))

    def _commit(self, descriptor):
        descriptor.validate()
        self._descriptors[descriptor.name] = descriptor
        return descriptor


def _carry_runtime_state(existing, declared):
    consumers = []
    for binding in declared.consumers:
        previous = existing.binding(binding.consumer_id)
        if previous is not None and binding.last_applied_version is None:
            binding = binding.applied(previous.last_applied_version)
        consumers.append(binding)
    return replace(declared,
                   consumers=tuple(consumers),
                   current_version=declared.current_version or existing.current_version,
                   last_rotated_at=declared.last_rotated_at or existing.last_rotated_at)


def _parse_enum(kind, value, name, field_name):
    if isinstance(value, kind):
        return value
    for member in kind:
        if str(value).lower() in (member.value.lower(), member.name.lower()):
            return member
    raise InvalidDescriptor(name, f"{field_name} {value!r} is not one of "
                                  f"{', '.join(m.value for m in kind)}")


def _parse_timestamp(value, name):
    if value is None:
        return None
    try:
        when = parser.isoparse(value) if isinstance(value, str) else value
    except ValueError:
        raise InvalidDescriptor(name, f"lastRotatedAt {value!r} is not ISO-8601") from None
    if when.tzinfo is None:
        when = pytz.UTC.localize(when)
    return when


def _parse_consumer(entry, name):
    if isinstance(entry, str):
        return ConsumerBinding(consumer_id=entry, descriptor_name=name)
    if not isinstance(entry, dict) or "consumerId" not in entry:
        raise InvalidDescriptor(name, f"consumer entry {entry!r} needs a consumerId")
    last_applied = entry.get("lastAppliedVersion")
    return ConsumerBinding(
        consumer_id=str(entry["consumerId"]),
        descriptor_name=name,
        last_applied_version=int(last_applied) if last_applied is not None else None,
        mount_mode=_parse_enum(MountMode, entry.get("mountMode", MountMode.ENV_VAR.value),
                               name, "mountMode"))


def parse_declaration(record):
    """Turn one declaration record into a validated ``SecretDescriptor``."""
    if not isinstance(record, dict):
        raise InvalidDescriptor(None, "declaration must be an object")
    name = record.get("name")
    if not name:
        raise InvalidDescriptor(name, "declaration needs a name")
    keys = record.get("keys") or []
    if isinstance(keys, str):
        raise InvalidDescriptor(name, "keys must be a list")
    try:
        policy = RotationPolicy.parse(record.get("rotationPolicy"))
    except ValueError as e:
        raise InvalidDescriptor(name, str(e)) from None
    descriptor = SecretDescriptor(
        name=name,
        backend=_parse_enum(BackendType, record.get("backend"), name, "backend"),
        keys=tuple(keys),
        rotation_policy=policy,
        consumers=tuple(_parse_consumer(entry, name) for entry in record.get("consumers", [])),
        last_rotated_at=_parse_timestamp(record.get("lastRotatedAt"), name))
    return descriptor.validate()


def parse_declarations(records):
    """Parse a batch, rejecting all of it if any record is invalid or names repeat."""
    if isinstance(records, dict):
        records = records.get("secrets", [])
    descriptors = [parse_declaration(record) for record in records]
    seen = set()
    for descriptor in descriptors:
        if descriptor.name in seen:
            raise InvalidDescriptor(descriptor.name, "declared more than once")
        seen.add(descriptor.name)
    return descriptors


def load_declarations_file(path):
    with open(path, "r", encoding="utf-8") as fh:
        return parse_declarations(json.load(fh))


def load_declarations_blob(bucket, blob_name, credentials=None):
    """Loads declarations stored as a JSON object in a Cloud Storage bucket.

    Args:
        bucket (str): The name of the bucket.
        blob_name (str): The name of the object in the bucket.
        credentials: Optional google credentials, default credentials otherwise.
    """
    client = storage.Client(credentials=credentials)
    bucket = client.get_bucket(bucket)
    blob = bucket.get_blob(blob_name)
    if blob is None:
        raise InvalidDescriptor(blob_name, f"declarations object not found in {bucket.name}")
    return parse_declarations(json.loads(blob.download_as_bytes().decode("utf-8")))
