# -*- coding: utf-8 -*-
"""secret_rotation_controller

A control loop that keeps declared secrets present and rotated in their stores
(Kubernetes secrets, a Vault KV mount, Google Secret Manager) and rolls each new
version out to its consumers in health gated waves.

"""

from secret_rotation_controller.exceptions import SecretControllerError, \
    ConfigError, \
    InvalidDescriptor, \
    DescriptorNotFound, \
    ConsumersStillBound, \
    BackendError, \
    SecretNotFound, \
    Unavailable, \
    Denied, \
    RolloutFailed, \
    RotationStalled, \
    VersionStillReferenced
from secret_rotation_controller.models import BackendType, \
    MountMode, \
    VersionState, \
    ReconcileAction, \
    ReconcileResult, \
    RotationState, \
    Condition, \
    RotationPolicy, \
    ConsumerBinding, \
    SecretDescriptor, \
    SecretVersion, \
    ReconcileRecord, \
    DescriptorStatus
from secret_rotation_controller.config import ControllerConfig
from secret_rotation_controller.events import Event, EventSink, LoggingEventSink, CollectingEventSink, \
    FanoutEventSink
from secret_rotation_controller.descriptors import DescriptorStore, \
    parse_declaration, \
    parse_declarations, \
    load_declarations_file, \
    load_declarations_blob
from secret_rotation_controller.adapters import SecretBackendAdapter, InMemoryBackend, AdapterRegistry
from secret_rotation_controller.native_adapter import NativeBackend
from secret_rotation_controller.vault_adapter import VaultBackend
from secret_rotation_controller.cloud_adapter import CloudManagerBackend
from secret_rotation_controller.providers import SecretValueProvider, \
    CallbackValueProvider, \
    FieldGeneratorProvider, \
    ValueProviderRegistry
from secret_rotation_controller.notifier import ConsumerSignal, PassiveSignal, ConsumerNotifier
from secret_rotation_controller.workloads import DeploymentRollout
from secret_rotation_controller.scheduler import RotationScheduler
from secret_rotation_controller.reconciler import Reconciler
from secret_rotation_controller.bootstrap import BootStrapSecrets
from secret_rotation_controller.controller import SecretController
from ._version import __version__

__all__ = ["__version__",
           "SecretControllerError",
           "ConfigError",
           "InvalidDescriptor",
           "DescriptorNotFound",
           "ConsumersStillBound",
           "BackendError",
           "SecretNotFound",
           "Unavailable",
           "Denied",
           "RolloutFailed",
           "RotationStalled",
           "VersionStillReferenced",
           "BackendType",
           "MountMode",
           "VersionState",
           "ReconcileAction",
           "ReconcileResult",
           "RotationState",
           "Condition",
           "RotationPolicy",
           "ConsumerBinding",
           "SecretDescriptor",
           "SecretVersion",
           "ReconcileRecord",
           "DescriptorStatus",
           "ControllerConfig",
           "Event",
           "EventSink",
           "LoggingEventSink",
           "CollectingEventSink",
           "FanoutEventSink",
           "DescriptorStore",
           "parse_declaration",
           "parse_declarations",
           "load_declarations_file",
           "load_declarations_blob",
           "SecretBackendAdapter",
           "InMemoryBackend",
           "AdapterRegistry",
           "NativeBackend",
           "VaultBackend",
           "CloudManagerBackend",
           "SecretValueProvider",
           "CallbackValueProvider",
           "FieldGeneratorProvider",
           "ValueProviderRegistry",
           "ConsumerSignal",
           "PassiveSignal",
           "ConsumerNotifier",
           "DeploymentRollout",
           "RotationScheduler",
           "Reconciler",
           "BootStrapSecrets",
           "SecretController"]
