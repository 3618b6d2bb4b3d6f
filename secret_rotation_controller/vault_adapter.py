# -*- coding: utf-8 -*-
"""Vault style adapter for a HashiCorp Vault KV version 2 mount.

Each logical secret lives at ``<path_prefix><name>``. Field values are stored
base64 encoded. Writes use check-and-set against the version that was read so
two writers cannot silently produce two new versions from the same base.
Revoking an old version soft deletes it, which Vault can still undelete.
"""

import logging
import threading

import hvac
import requests
from dateutil import parser
from hvac import exceptions

from .adapters import SecretBackendAdapter, values_from_text, values_to_text
from .exceptions import SecretNotFound
from .models import BackendType, SecretVersion, VersionState

TRANSIENT_EXCEPTIONS = (exceptions.VaultDown,
                        exceptions.RateLimitExceeded,
                        exceptions.InternalServerError,
                        exceptions.BadGateway,
                        requests.exceptions.ConnectionError,
                        requests.exceptions.Timeout)

DENIED_EXCEPTIONS = (exceptions.Forbidden,
                     exceptions.Unauthorized)


class VaultBackend(SecretBackendAdapter):
    backend_type = BackendType.VAULT_LIKE

    def __init__(self, url=None, token=None, mount_point="secret", path_prefix="",
                 namespace=None, verify=True, client=None):
        self._mount_point = mount_point
        self._path_prefix = path_prefix
        self._client_kwargs = {"url": url, "token": token, "namespace": namespace, "verify": verify}
        self._shared_client = client
        self.ns = threading.local()

    def _client(self):
        if self._shared_client is not None:
            return self._shared_client
        # hvac clients wrap a requests session which is not thread safe
        if not hasattr(self.ns, "client"):
            self.ns.client = hvac.Client(**self._client_kwargs)
        return self.ns.client

    @property
    def _kv(self):
        return self._client().secrets.kv.v2

    def path(self, name):
        return f"{self._path_prefix}{name}"

    def _translate(self, operation, name, error):
        if isinstance(error, DENIED_EXCEPTIONS):
            return self._denied(operation, name, error)
        return self._unavailable(operation, name, error)

    def _read(self, name):
        try:
            response = self._kv.read_secret_version(path=self.path(name),
                                                    mount_point=self._mount_point,
                                                    raise_on_deleted_version=True)
        except exceptions.InvalidPath:
            raise self._not_found(name) from None
        except (DENIED_EXCEPTIONS + TRANSIENT_EXCEPTIONS) as e:
            raise self._translate("get", name, e) from None
        except exceptions.VaultError as e:
            raise self._failed("get", name, e) from None
        data = response.get("data") or {}
        metadata = data.get("metadata") or {}
        if not metadata.get("version"):
            raise self._not_found(name)
        return data.get("data") or {}, metadata

    def get(self, name):
        fields, metadata = self._read(name)
        try:
            values = values_from_text(fields)
        except ValueError:
            logging.getLogger(__name__).warning(
                f"Vault path {self.path(name)} version {metadata['version']} "
                f"holds fields that are not base64 encoded")
            values = {}
        return SecretVersion(descriptor_name=name,
                             version=int(metadata["version"]),
                             values=values,
                             created_at=parser.isoparse(metadata["created_time"]),
                             state=VersionState.ACTIVE)

    def put(self, name, values):
        values = dict(values)
        try:
            current = self.get(name)
        except SecretNotFound:
            current = None
        if current is not None and current.matches(values):
            return current

        cas = current.version if current is not None else 0
        try:
            response = self._kv.create_or_update_secret(path=self.path(name),
                                                        secret=values_to_text(values),
                                                        cas=cas,
                                                        mount_point=self._mount_point)
        except exceptions.InvalidRequest as e:
            # a check-and-set mismatch means someone else wrote first; read again
            raise self._unavailable("put", name, e) from None
        except (DENIED_EXCEPTIONS + TRANSIENT_EXCEPTIONS) as e:
            raise self._translate("put", name, e) from None
        except exceptions.VaultError as e:
            raise self._failed("put", name, e) from None
        metadata = response.get("data") or {}
        return SecretVersion(descriptor_name=name,
                             version=int(metadata["version"]),
                             values=values,
                             created_at=parser.isoparse(metadata["created_time"]),
                             state=VersionState.ACTIVE)

    def delete(self, name):
        try:
            self._kv.read_secret_metadata(path=self.path(name), mount_point=self._mount_point)
            self._kv.delete_metadata_and_all_versions(path=self.path(name),
                                                      mount_point=self._mount_point)
        except exceptions.InvalidPath:
            return False
        except (DENIED_EXCEPTIONS + TRANSIENT_EXCEPTIONS) as e:
            raise self._translate("delete", name, e) from None
        except exceptions.VaultError as e:
            raise self._failed("delete", name, e) from None
        return True

    def revoke(self, name, version):
        try:
            self._kv.delete_secret_versions(path=self.path(name), versions=[version],
                                            mount_point=self._mount_point)
        except exceptions.InvalidPath:
            return None
        except (DENIED_EXCEPTIONS + TRANSIENT_EXCEPTIONS) as e:
            raise self._translate("revoke", name, e) from None
        except exceptions.VaultError as e:
            raise self._failed("revoke", name, e) from None
        logging.getLogger(__name__).info(
            f"Soft deleted version {version} of vault path {self.path(name)}")
