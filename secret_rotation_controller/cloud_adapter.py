# -*- coding: utf-8 -*-
"""Cloud secrets manager adapter backed by Google Secret Manager.

The current version of a secret is the most recent *enabled* version, not
``latest``. Disabling the newest version therefore rolls the secret back to
the previous enabled one, and revocation of superseded versions is done by
disabling them.

Payloads are UTF-8 JSON objects mapping each key to its base64 encoded value.
"""

import json
import logging
import re
import threading

import google.auth
import google_crc32c
from google.api_core import exceptions
from google.auth import exceptions as auth_exceptions
from google.cloud import secretmanager, secretmanager_v1

from .adapters import SecretBackendAdapter, values_from_text, values_to_text
from .exceptions import SecretNotFound
from .models import BackendType, SecretVersion, VersionState

TRANSIENT_EXCEPTIONS = (exceptions.ServerError,
                        exceptions.TooManyRequests,
                        exceptions.DeadlineExceeded,
                        exceptions.Conflict,
                        auth_exceptions.TransportError)

DENIED_EXCEPTIONS = (exceptions.PermissionDenied,
                     exceptions.Unauthenticated,
                     exceptions.Forbidden,
                     auth_exceptions.RefreshError)

MANAGED_BY_LABEL = {"managed-by": "secret-rotation-controller"}


def version_number(version_name):
    return int(re.search(r"projects/[^/]+/secrets/[^/]+/versions/([0-9]+)", version_name).group(1))


class CloudManagerBackend(SecretBackendAdapter):
    backend_type = BackendType.CLOUD_MANAGER

    def __init__(self, project_id=None, _credentials_callback=None, client=None):
        """
        :param project_id: project holding the secrets, defaults to the credentials' project
        :param _credentials_callback: returns ``(credentials, project_id)``, defaults to
            ``google.auth.default``
        :param client: a ready ``SecretManagerServiceClient`` shared by all threads
        """
        self._project_id = project_id
        self._credentials_callback = _credentials_callback
        self._shared_client = client
        self.ns = threading.local()

    @property
    def _credentials(self):
        if not hasattr(self.ns, "_credentials"):
            if self._credentials_callback is not None:
                _credentials, _project_id = self._credentials_callback()
            else:
                _credentials, _project_id = google.auth.default()
            self.ns._credentials = _credentials
            self.ns._project_id = _project_id
        return self.ns._credentials

    def _client(self):
        if self._shared_client is not None:
            return self._shared_client
        if not hasattr(self.ns, "client"):
            self.ns.client = secretmanager.SecretManagerServiceClient(credentials=self._credentials)
        return self.ns.client

    @property
    def project_id(self):
        if self._project_id is None:
            _ = self._credentials
            self._project_id = self.ns._project_id
        return self._project_id

    def secret_path(self, name):
        return f"projects/{self.project_id}/secrets/{name}"

    def _translate(self, operation, name, error):
        if isinstance(error, DENIED_EXCEPTIONS):
            return self._denied(operation, name, error)
        if isinstance(error, TRANSIENT_EXCEPTIONS):
            return self._unavailable(operation, name, error)
        return error

    def _latest_enabled(self, name):
        request = secretmanager_v1.ListSecretVersionsRequest(
            parent=self.secret_path(name),
            filter="state=ENABLED"
        )
        latest = None
        for response in self._client().list_secret_versions(request=request):
            if latest is None or latest.create_time < response.create_time:
                latest = response
        return latest

    def get(self, name):
        try:
            latest = self._latest_enabled(name)
            if latest is None:
                raise self._not_found(name)
            request = secretmanager_v1.AccessSecretVersionRequest(name=latest.name)
            payload = self._client().access_secret_version(request=request).payload.data
        except exceptions.NotFound:
            raise self._not_found(name) from None
        except (DENIED_EXCEPTIONS + TRANSIENT_EXCEPTIONS) as e:
            raise self._translate("get", name, e) from None
        except exceptions.GoogleAPICallError as e:
            raise self._failed("get", name, e) from None

        try:
            values = values_from_text(json.loads(payload.decode("utf-8")))
        except (ValueError, AttributeError):
            # Unreadable payloads look like schema drift and get rotated away.
            logging.getLogger(__name__).warning(
                f"Version {latest.name} does not hold a controller payload")
            values = {}
        return SecretVersion(descriptor_name=name,
                             version=version_number(latest.name),
                             values=values,
                             created_at=latest.create_time,
                             state=VersionState.ACTIVE)

    def _create_secret(self, name):
        self._client().create_secret(
            request={
                "parent": f"projects/{self.project_id}",
                "secret_id": name,
                "secret": {"replication": {"automatic": {}},
                           "labels": MANAGED_BY_LABEL},
            }
        )
        logging.getLogger(__name__).info(f"Created secret {self.secret_path(name)}")

    def _add_version(self, name, payload):
        crc32c = google_crc32c.Checksum()
        crc32c.update(payload)
        return self._client().add_secret_version(
            request={
                "parent": self.secret_path(name),
                "payload": {"data": payload, "data_crc32c": int(crc32c.hexdigest(), 16)},
            }
        )

    def put(self, name, values):
        values = dict(values)
        try:
            current = self.get(name)
        except SecretNotFound:
            current = None
        if current is not None and current.matches(values):
            return current

        payload = json.dumps(values_to_text(values), sort_keys=True).encode("utf-8")
        try:
            try:
                response = self._add_version(name, payload)
            except exceptions.NotFound:
                self._create_secret(name)
                response = self._add_version(name, payload)
        except (DENIED_EXCEPTIONS + TRANSIENT_EXCEPTIONS) as e:
            raise self._translate("put", name, e) from None
        except exceptions.GoogleAPICallError as e:
            raise self._failed("put", name, e) from None
        return SecretVersion(descriptor_name=name,
                             version=version_number(response.name),
                             values=values,
                             created_at=response.create_time,
                             state=VersionState.ACTIVE)

    def delete(self, name):
        try:
            self._client().delete_secret(request={"name": self.secret_path(name)})
        except exceptions.NotFound:
            return False
        except (DENIED_EXCEPTIONS + TRANSIENT_EXCEPTIONS) as e:
            raise self._translate("delete", name, e) from None
        except exceptions.GoogleAPICallError as e:
            raise self._failed("delete", name, e) from None
        return True

    def revoke(self, name, version):
        version_name = f"{self.secret_path(name)}/versions/{version}"
        try:
            self._client().disable_secret_version(request={"name": version_name})
        except (exceptions.NotFound, exceptions.FailedPrecondition):
            # already destroyed or disabled
            return None
        except (DENIED_EXCEPTIONS + TRANSIENT_EXCEPTIONS) as e:
            raise self._translate("revoke", name, e) from None
        except exceptions.GoogleAPICallError as e:
            raise self._failed("revoke", name, e) from None
        logging.getLogger(__name__).info(f"Disabled {version_name}")
