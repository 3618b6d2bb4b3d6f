# -*- coding: utf-8 -*-
"""Event output for reconcile passes and rollout waves.

Events carry names, versions and outcomes only. Secret values are never part of
an event.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from .models import utcnow

WAVE_ACTION = "RolloutWave"
ROLLOUT_ACTION = "Rollout"
ROTATION_ACTION = "Rotation"
ADMIN_ACTION = "Admin"


@dataclass(frozen=True)
class Event:
    timestamp: object
    descriptor_name: str
    action: str
    result: str
    version: Optional[int] = None
    detail: Optional[str] = None

    @classmethod
    def from_record(cls, record, timestamp=None):
        return cls(timestamp=timestamp or utcnow(),
                   descriptor_name=record.descriptor_name,
                   action=record.action.value,
                   result=record.result.value,
                   version=record.desired_version,
                   detail=record.detail)

    def as_dict(self):
        document = {
            "timestamp": self.timestamp.isoformat(),
            "descriptorName": self.descriptor_name,
            "action": self.action,
            "result": self.result,
        }
        if self.version is not None:
            document["version"] = self.version
        if self.detail:
            document["detail"] = self.detail
        return document


class EventSink(ABC):

    @abstractmethod
    def emit(self, event):
        pass


class LoggingEventSink(EventSink):
    """Writes each event as a single JSON line to a logger."""

    def __init__(self, logger_name="secret_rotation_controller.events", level=logging.INFO):
        self._logger = logging.getLogger(logger_name)
        self._level = level

    def emit(self, event):
        self._logger.log(self._level, json.dumps(event.as_dict(), sort_keys=True))


class CollectingEventSink(EventSink):
    """Keeps events in memory, handy for embedding and tests."""

    def __init__(self):
        self._lock = threading.Lock()
        self._events = []

    def emit(self, event):
        with self._lock:
            self._events.append(event)

    @property
    def events(self):
        with self._lock:
            return list(self._events)

    def for_descriptor(self, name):
        return [event for event in self.events if event.descriptor_name == name]


class FanoutEventSink(EventSink):

    def __init__(self, *sinks):
        self._sinks = list(sinks)

    def emit(self, event):
        for sink in self._sinks:
            try:
                sink.emit(event)
            except Exception:
                logging.getLogger(__name__).exception(
                    f"Event sink {type(sink).__name__} failed for {event.descriptor_name}")
