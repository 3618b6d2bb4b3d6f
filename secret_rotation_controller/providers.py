# -*- coding: utf-8 -*-
"""Sources of secret values.

The reconciler never invents secret material. Values for the initial version
(seed) and for every rotation come from a ``SecretValueProvider`` registered
for the descriptor, or from the registry's default provider.
"""

import logging
from abc import ABC, abstractmethod

from .exceptions import InvalidDescriptor
from .models import encode_values


class SecretValueProvider(ABC):
    """Strategy that supplies secret values to the reconciler.

    The reconciler is the context: it decides when a secret is created or
    rotated and calls the provider for the material. Implementations return a
    mapping of every declared key to its value (bytes, str, or JSON-able
    structures, see ``models.encode_values``).
    """

    @abstractmethod
    def seed_values(self, descriptor):
        """Returns the values of the first version of a secret.

        Args:
            descriptor (SecretDescriptor): The secret being created.
        """

    @abstractmethod
    def create_new_values(self, descriptor, current):
        """Returns the values for a rotation.

        Args:
            descriptor (SecretDescriptor): The secret being rotated.
            current (SecretVersion): The version being replaced. After a change of
                the declared keys it may hold keys that are no longer declared, or
                miss new ones.
        """

    def validate_values(self, descriptor, values):
        """Optional check of freshly produced values, raise to refuse them."""
        return None


class CallbackValueProvider(SecretValueProvider):
    """Adapts plain callables, ``seed(descriptor)`` and ``generate(descriptor, current)``."""

    def __init__(self, seed=None, generate=None):
        self._seed = seed
        self._generate = generate

    def seed_values(self, descriptor):
        if self._seed is None:
            raise InvalidDescriptor(descriptor.name, "no seed values supplied")
        return self._seed(descriptor)

    def create_new_values(self, descriptor, current):
        if self._generate is None:
            raise InvalidDescriptor(descriptor.name, "no generator supplied for rotation")
        return self._generate(descriptor, current)


class FieldGeneratorProvider(SecretValueProvider):
    """Rotates selected fields and carries the others over.

    ``generators`` maps a key to ``callable(descriptor)`` producing a new value for
    it, e.g. ``{"password": make_password}``. Keys without a generator keep their
    current value, which suits credentials like a username that outlives its
    password.
    """

    def __init__(self, seed, generators):
        self._seed = dict(seed)
        self._generators = dict(generators)

    def seed_values(self, descriptor):
        values = {key: self._seed[key] for key in descriptor.keys if key in self._seed}
        for key in descriptor.keys:
            if key not in values and key in self._generators:
                values[key] = self._generators[key](descriptor)
        return values

    def create_new_values(self, descriptor, current):
        values = {}
        for key in descriptor.keys:
            if key in self._generators:
                values[key] = self._generators[key](descriptor)
            elif key in current.values:
                values[key] = current.values[key]
            elif key in self._seed:
                values[key] = self._seed[key]
        return values


class ValueProviderRegistry:

    def __init__(self, default=None):
        self._default = default
        self._providers = {}

    def register(self, name, provider):
        self._providers[name] = provider
        return provider

    def unregister(self, name):
        self._providers.pop(name, None)

    def for_descriptor(self, descriptor):
        provider = self._providers.get(descriptor.name, self._default)
        if provider is None:
            raise InvalidDescriptor(descriptor.name, "no value provider registered")
        return provider

    def seed(self, descriptor):
        provider = self.for_descriptor(descriptor)
        return self._checked(provider, descriptor, provider.seed_values(descriptor))

    def rotate(self, descriptor, current):
        provider = self.for_descriptor(descriptor)
        return self._checked(provider, descriptor, provider.create_new_values(descriptor, current))

    def _checked(self, provider, descriptor, values):
        values = encode_values(values or {})
        missing = [key for key in descriptor.keys if key not in values]
        extra = [key for key in values if key not in descriptor.keys]
        if missing or extra:
            # key names only, never the values
            logging.getLogger(__name__).warning(
                f"Provider {type(provider).__name__} returned keys not matching {descriptor.name}")
            raise InvalidDescriptor(descriptor.name,
                                    f"provider values missing {missing} unexpected {extra}")
        provider.validate_values(descriptor, values)
        return {key: values[key] for key in descriptor.keys}
