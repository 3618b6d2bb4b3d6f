# -*- coding: utf-8 -*-

class SecretControllerError(Exception):
    """Base Error class."""


class ConfigError(SecretControllerError):
    CUSTOM_ERROR_MESSAGE = "Controller setting {} is invalid: {}"

    def __init__(self, setting, reason):
        super(ConfigError, self).__init__(self.CUSTOM_ERROR_MESSAGE.format(setting, reason))
        self._setting = setting

    @property
    def setting(self):
        return self._setting


class InvalidDescriptor(SecretControllerError):
    CUSTOM_ERROR_MESSAGE = "Secret descriptor {} rejected: {}"

    def __init__(self, name, reason):
        super(InvalidDescriptor, self).__init__(self.CUSTOM_ERROR_MESSAGE.format(name, reason))
        self._name = name
        self._reason = reason

    @property
    def name(self):
        return self._name

    @property
    def reason(self):
        return self._reason


class DescriptorNotFound(SecretControllerError):
    CUSTOM_ERROR_MESSAGE = "Secret descriptor {} is not declared"

    def __init__(self, name):
        super(DescriptorNotFound, self).__init__(self.CUSTOM_ERROR_MESSAGE.format(name))
        self._name = name

    @property
    def name(self):
        return self._name


class ConsumersStillBound(SecretControllerError):
    CUSTOM_ERROR_MESSAGE = "Secret descriptor {} still has bound consumers {}"

    def __init__(self, name, consumer_ids):
        super(ConsumersStillBound, self).__init__(
            self.CUSTOM_ERROR_MESSAGE.format(name, ", ".join(sorted(consumer_ids))))
        self._name = name
        self._consumer_ids = sorted(consumer_ids)

    @property
    def name(self):
        return self._name

    @property
    def consumer_ids(self):
        return self._consumer_ids


class BackendError(SecretControllerError):
    """Raised by backend adapters. Messages never carry secret material."""

    CUSTOM_ERROR_MESSAGE = "Backend {} failed {} for secret {}: {}"

    def __init__(self, backend, operation, name, reason):
        super(BackendError, self).__init__(
            self.CUSTOM_ERROR_MESSAGE.format(backend, operation, name, reason))
        self._backend = backend
        self._operation = operation
        self._name = name
        self._reason = reason

    @property
    def backend(self):
        return self._backend

    @property
    def operation(self):
        return self._operation

    @property
    def name(self):
        return self._name

    @property
    def reason(self):
        return self._reason


class SecretNotFound(BackendError):
    def __init__(self, backend, name):
        super(SecretNotFound, self).__init__(backend, "get", name, "no current version")


class Unavailable(BackendError):
    """Transient backend failure, safe to retry."""


class Denied(BackendError):
    """Authorization failure, needs an operator."""


class RolloutFailed(SecretControllerError):
    CUSTOM_ERROR_MESSAGE = "Rollout of {} version {} halted at wave {}: consumers {} not healthy"

    def __init__(self, name, version, wave, unhealthy):
        super(RolloutFailed, self).__init__(
            self.CUSTOM_ERROR_MESSAGE.format(name, version, wave, ", ".join(sorted(unhealthy))))
        self._name = name
        self._version = version
        self._wave = wave
        self._unhealthy = sorted(unhealthy)

    @property
    def name(self):
        return self._name

    @property
    def version(self):
        return self._version

    @property
    def wave(self):
        return self._wave

    @property
    def unhealthy(self):
        return self._unhealthy


class RotationStalled(SecretControllerError):
    CUSTOM_ERROR_MESSAGE = "Rotation of {} to version {} did not complete within {}"

    def __init__(self, name, version, deadline):
        super(RotationStalled, self).__init__(
            self.CUSTOM_ERROR_MESSAGE.format(name, version, deadline))
        self._name = name
        self._version = version

    @property
    def name(self):
        return self._name

    @property
    def version(self):
        return self._version


class VersionStillReferenced(SecretControllerError):
    CUSTOM_ERROR_MESSAGE = "Version {} of {} is still applied by consumers {}"

    def __init__(self, name, version, consumer_ids):
        super(VersionStillReferenced, self).__init__(
            self.CUSTOM_ERROR_MESSAGE.format(version, name, ", ".join(sorted(consumer_ids))))
        self._name = name
        self._version = version
        self._consumer_ids = sorted(consumer_ids)

    @property
    def name(self):
        return self._name

    @property
    def version(self):
        return self._version

    @property
    def consumer_ids(self):
        return self._consumer_ids
