# -*- coding: utf-8 -*-
"""Native cluster store adapter: Kubernetes ``Secret`` objects.

A Secret object holds a single generation of values, so the version number and
its creation time are tracked in annotations on the object. Writes replace the
object with the ``resourceVersion`` that was read; a concurrent writer causes a
409 which is reported as ``Unavailable`` and retried from a fresh read.
Secrets that were not written by the controller carry no version annotation and
are reported as version 0.
"""

import logging
import threading

import urllib3
from dateutil import parser
from kubernetes import client
from kubernetes.client.rest import ApiException

from .adapters import SecretBackendAdapter, values_from_text, values_to_text
from .exceptions import SecretNotFound
from .models import BackendType, SecretVersion, VersionState, utcnow

VERSION_ANNOTATION = "secret-rotation-controller/version"
CREATED_ANNOTATION = "secret-rotation-controller/created-at"
MANAGED_BY_LABELS = {"app.kubernetes.io/managed-by": "secret-rotation-controller"}

DENIED_STATUSES = (401, 403)
TRANSIENT_STATUSES = (409, 429, 500, 502, 503, 504)


class NativeBackend(SecretBackendAdapter):
    backend_type = BackendType.NATIVE

    def __init__(self, namespace="default", name_prefix="", api=None, api_factory=None):
        """
        :param namespace: namespace holding the managed Secret objects
        :param name_prefix: prepended to descriptor names to form object names
        :param api: a ready ``CoreV1Api`` shared by all threads
        :param api_factory: builds a ``CoreV1Api`` per thread, e.g. ``BootStrapSecrets.kubernetes_core_api``
        """
        self._namespace = namespace
        self._name_prefix = name_prefix
        self._shared_api = api
        self._api_factory = api_factory or client.CoreV1Api
        self.ns = threading.local()

    def _api(self):
        if self._shared_api is not None:
            return self._shared_api
        if not hasattr(self.ns, "api"):
            self.ns.api = self._api_factory()
        return self.ns.api

    def object_name(self, name):
        return f"{self._name_prefix}{name}"

    def _translate(self, operation, name, error):
        if isinstance(error, ApiException):
            if error.status == 404:
                return self._not_found(name)
            if error.status in DENIED_STATUSES:
                return self._denied(operation, name, error)
            if error.status in TRANSIENT_STATUSES:
                return self._unavailable(operation, name, error)
            return self._failed(operation, name, error)
        return self._unavailable(operation, name, error)

    def _read(self, name):
        try:
            return self._api().read_namespaced_secret(name=self.object_name(name),
                                                      namespace=self._namespace)
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            raise self._translate("get", name, e) from None

    def _to_version(self, name, secret, values=None):
        annotations = secret.metadata.annotations or {}
        created_at = annotations.get(CREATED_ANNOTATION)
        if created_at:
            created_at = parser.isoparse(created_at)
        else:
            created_at = secret.metadata.creation_timestamp or utcnow()
        if values is None:
            try:
                values = values_from_text(secret.data or {})
            except ValueError:
                logging.getLogger(__name__).warning(
                    f"Secret {self._namespace}/{self.object_name(name)} has undecodable data")
                values = {}
        return SecretVersion(descriptor_name=name,
                             version=int(annotations.get(VERSION_ANNOTATION, 0)),
                             values=values,
                             created_at=created_at,
                             state=VersionState.ACTIVE)

    def get(self, name):
        return self._to_version(name, self._read(name))

    def put(self, name, values):
        values = dict(values)
        try:
            existing = self._read(name)
        except SecretNotFound:
            existing = None
        if existing is not None:
            current = self._to_version(name, existing)
            if current.matches(values):
                return current
            next_version = current.version + 1
        else:
            next_version = 1

        created_at = utcnow()
        annotations = dict(existing.metadata.annotations or {}) if existing is not None else {}
        annotations[VERSION_ANNOTATION] = str(next_version)
        annotations[CREATED_ANNOTATION] = created_at.isoformat()
        labels = dict(existing.metadata.labels or {}) if existing is not None else {}
        labels.update(MANAGED_BY_LABELS)
        body = client.V1Secret(
            metadata=client.V1ObjectMeta(
                name=self.object_name(name),
                namespace=self._namespace,
                annotations=annotations,
                labels=labels,
                resource_version=existing.metadata.resource_version if existing is not None else None,
            ),
            type="Opaque",
            data=values_to_text(values),
        )
        try:
            if existing is not None:
                written = self._api().replace_namespaced_secret(name=self.object_name(name),
                                                                namespace=self._namespace,
                                                                body=body)
            else:
                written = self._api().create_namespaced_secret(namespace=self._namespace, body=body)
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            error = self._translate("put", name, e)
            if isinstance(error, SecretNotFound):
                # deleted between read and replace
                error = self._unavailable("put", name, e)
            raise error from None
        logging.getLogger(__name__).info(
            f"Wrote version {next_version} of {name} to secret "
            f"{self._namespace}/{self.object_name(name)}")
        return self._to_version(name, written, values=values)

    def delete(self, name):
        try:
            self._api().delete_namespaced_secret(name=self.object_name(name),
                                                 namespace=self._namespace)
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            error = self._translate("delete", name, e)
            if isinstance(error, SecretNotFound):
                return False
            raise error from None
        return True
