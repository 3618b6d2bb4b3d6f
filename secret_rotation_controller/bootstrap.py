# -*- coding: utf-8 -*-

"""
Credentials the backend adapters themselves run with.

These are bootstrap secrets: they are provisioned outside the controller (a
mounted token file, the pod's service account, workload identity) and are never
managed by the reconcile loop, otherwise the controller would depend on itself
to reach its own stores.

Sources tried, per backend

Native        - in cluster service account, then the local kubeconfig
VaultLike     - VAULT_TOKEN, a token file (VAULT_TOKEN_FILE), or Kubernetes auth
                with the service account token when VAULT_K8S_ROLE is set
CloudManager  - google application default credentials

Adapter settings mirror the declaration backend names::

    {
        "Native": {"namespace": "payments", "namePrefix": ""},
        "VaultLike": {"url": "https://vault:8200", "mountPoint": "secret", "pathPrefix": "apps/"},
        "CloudManager": {"projectId": "my-project"}
    }
"""

import logging
import os

import google.auth
import hvac
from kubernetes import client, config

from .adapters import AdapterRegistry
from .cloud_adapter import CloudManagerBackend
from .exceptions import ConfigError, Denied
from .models import BackendType
from .native_adapter import NativeBackend
from .vault_adapter import VaultBackend

SERVICE_ACCOUNT_TOKEN = "/var/run/secrets/kubernetes.io/serviceaccount/token"


class BootStrapSecrets:

    def __init__(self, environ=None):
        self._environ = os.environ if environ is None else environ
        self._kube_loaded = False

    def _read_file(self, path):
        with open(path, "r", encoding="utf-8") as fh:
            return fh.read().strip()

    def load_kubernetes_config(self):
        if self._kube_loaded:
            return
        try:
            config.load_incluster_config()
        except config.ConfigException:
            config.load_kube_config()
        self._kube_loaded = True

    def kubernetes_core_api(self):
        self.load_kubernetes_config()
        return client.CoreV1Api()

    def kubernetes_apps_api(self):
        self.load_kubernetes_config()
        return client.AppsV1Api()

    def vault_token(self):
        token = self._environ.get("VAULT_TOKEN")
        if token:
            return token
        token_file = self._environ.get("VAULT_TOKEN_FILE")
        if token_file:
            return self._read_file(token_file)
        return None

    def vault_client(self, url=None, namespace=None, verify=True):
        url = url or self._environ.get("VAULT_ADDR")
        if not url:
            raise ConfigError("VaultLike.url", "no vault address configured")
        vault = hvac.Client(url=url, token=self.vault_token(), namespace=namespace, verify=verify)
        role = self._environ.get("VAULT_K8S_ROLE")
        if not vault.token and role:
            jwt = self._read_file(self._environ.get("VAULT_K8S_TOKEN_FILE", SERVICE_ACCOUNT_TOKEN))
            vault.auth.kubernetes.login(role=role, jwt=jwt)
        if not vault.is_authenticated():
            raise Denied(BackendType.VAULT_LIKE.value, "login", url, "bootstrap token rejected")
        logging.getLogger(__name__).info(f"Authenticated to vault at {url}")
        return vault

    def google_credentials(self):
        """Returns ``(credentials, project_id)`` as expected by ``CloudManagerBackend``."""
        return google.auth.default()

    def build_adapters(self, settings):
        """Create an ``AdapterRegistry`` for the backends named in ``settings``."""
        registry = AdapterRegistry()
        for backend_name, options in (settings or {}).items():
            options = options or {}
            try:
                backend_type = BackendType(backend_name)
            except ValueError:
                raise ConfigError(backend_name, "unknown backend") from None
            if backend_type is BackendType.NATIVE:
                adapter = NativeBackend(namespace=options.get("namespace", "default"),
                                        name_prefix=options.get("namePrefix", ""),
                                        api_factory=self.kubernetes_core_api)
            elif backend_type is BackendType.VAULT_LIKE:
                vault = self.vault_client(url=options.get("url"),
                                          namespace=options.get("namespace"),
                                          verify=options.get("verify", True))
                # each adapter thread gets its own client, built from the bootstrap token
                adapter = VaultBackend(url=vault.url,
                                       token=vault.token,
                                       namespace=options.get("namespace"),
                                       verify=options.get("verify", True),
                                       mount_point=options.get("mountPoint", "secret"),
                                       path_prefix=options.get("pathPrefix", ""))
            else:
                adapter = CloudManagerBackend(project_id=options.get("projectId"),
                                              _credentials_callback=self.google_credentials)
            registry.register(adapter)
        return registry
