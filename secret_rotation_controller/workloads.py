# -*- coding: utf-8 -*-
"""Kubernetes Deployments as secret consumers.

Consumer ids name a Deployment as ``<namespace>/<name>``, or just ``<name>`` in
the default namespace. A consumer is signalled by patching its pod template
annotations, which makes the Deployment roll its pods, and is healthy once that
rollout has fully converged.
"""

import logging

from kubernetes import client
from kubernetes.client.rest import ApiException

from .models import MountMode, utcnow
from .notifier import ConsumerSignal

RESTARTED_AT_ANNOTATION = "kubectl.kubernetes.io/restartedAt"
VERSION_ANNOTATION_TEMPLATE = "secret-rotation-controller/{}-version"


class DeploymentRollout(ConsumerSignal):

    def __init__(self, default_namespace="default", restart_file_mounts=True, api=None,
                 api_factory=None):
        """
        :param default_namespace: namespace of consumer ids without one
        :param restart_file_mounts: when False, consumers mounting the secret as files
            are only annotated, the kubelet refreshes their files in place
        :param api: an ``AppsV1Api``
        :param api_factory: builds the ``AppsV1Api`` on first use
        """
        self._default_namespace = default_namespace
        self._restart_file_mounts = restart_file_mounts
        self._api_instance = api
        self._api_factory = api_factory or client.AppsV1Api

    def _api(self):
        if self._api_instance is None:
            self._api_instance = self._api_factory()
        return self._api_instance

    def locate(self, consumer_id):
        if "/" in consumer_id:
            namespace, name = consumer_id.split("/", 1)
            return namespace, name
        return self._default_namespace, consumer_id

    def notify(self, binding, version):
        namespace, name = self.locate(binding.consumer_id)
        annotations = {VERSION_ANNOTATION_TEMPLATE.format(binding.descriptor_name): str(version)}
        if binding.mount_mode is MountMode.ENV_VAR or self._restart_file_mounts:
            annotations[RESTARTED_AT_ANNOTATION] = utcnow().isoformat()
        body = {"spec": {"template": {"metadata": {"annotations": annotations}}}}
        self._api().patch_namespaced_deployment(name=name, namespace=namespace, body=body)
        logging.getLogger(__name__).info(
            f"Signalled deployment {namespace}/{name} for {binding.descriptor_name} "
            f"version {version}")

    def is_healthy(self, consumer_id):
        namespace, name = self.locate(consumer_id)
        try:
            deployment = self._api().read_namespaced_deployment_status(name=name, namespace=namespace)
        except ApiException as e:
            logging.getLogger(__name__).warning(
                f"Could not read deployment {namespace}/{name} status ({e.status})")
            return False
        return rollout_converged(deployment)


def rollout_converged(deployment):
    """Same test ``kubectl rollout status`` applies."""
    status = deployment.status
    desired = deployment.spec.replicas if deployment.spec.replicas is not None else 1
    if (status.observed_generation or 0) < (deployment.metadata.generation or 0):
        return False
    if (status.updated_replicas or 0) < desired:
        return False
    if (status.replicas or 0) > (status.updated_replicas or 0):
        # old pods still terminating
        return False
    return (status.available_replicas or 0) >= desired
