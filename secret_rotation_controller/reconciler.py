# -*- coding: utf-8 -*-
"""The reconcile loop.

One pass for a descriptor:

1. read the declared descriptor and the backend's current version
2. nothing stored yet                      -> Create from the provider's seed values
3. declared keys differ or rotation is Due -> Rotate with fresh provider values
4. otherwise                               -> NoOp, and revoke superseded versions no
                                              consumer runs any more
5. after Create/Rotate the consumers not yet on the new version are rolled out

Passes are keyed by descriptor name. Different descriptors run in parallel on
the worker pool, a descriptor never has two passes in flight. Triggers that
arrive while a pass runs are collapsed into a single follow-up pass. Operator
writes (delete, revoke) take the same per descriptor ``slot`` as passes.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .events import ROLLOUT_ACTION, Event
from .exceptions import (BackendError, ConfigError, Denied, DescriptorNotFound, InvalidDescriptor,
                         RolloutFailed, SecretNotFound, Unavailable, VersionStillReferenced)
from .models import (Condition, ReconcileAction, ReconcileRecord, ReconcileResult, RolloutBatch,
                     RotationState, utcnow)


class _InFlight:

    def __init__(self):
        self.future = None
        self.rerun = False


class Reconciler:

    def __init__(self, store, adapters, history, providers, scheduler, notifier, conditions,
                 workers=4, max_attempts=5, backoff_multiplier=0.5, backoff_max=30.0,
                 emit=None, sleep=time.sleep, clock=utcnow):
        self._store = store
        self._adapters = adapters
        self._history = history
        self._providers = providers
        self._scheduler = scheduler
        self._notifier = notifier
        self._conditions = conditions
        self._max_attempts = max_attempts
        self._backoff_multiplier = backoff_multiplier
        self._backoff_max = backoff_max
        self._emit = emit or (lambda event: None)
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.Lock()
        self._inflight = {}
        self._slots = {}
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="reconcile")

    # -- scheduling -------------------------------------------------------------------------

    def trigger(self, name):
        """Ask for a pass over ``name``.

        Returns a future resolving to the list of ``ReconcileRecord`` produced. A
        trigger that arrives while a pass is running returns that pass's future,
        which then resolves after one extra follow-up pass.
        """
        with self._lock:
            entry = self._inflight.get(name)
            if entry is not None:
                entry.rerun = True
                return entry.future
            entry = _InFlight()
            self._inflight[name] = entry
            entry.future = self._executor.submit(self._drain, name)
            entry.future.add_done_callback(_log_failure)
            return entry.future

    def trigger_all(self):
        futures = {}
        for name in self._store.names():
            if self._conditions.is_blocked(name):
                logging.getLogger(__name__).debug(f"Skipping blocked {name}")
                continue
            futures[name] = self.trigger(name)
        return futures

    def reconcile(self, name, timeout=None):
        return self.trigger(name).result(timeout=timeout)

    def in_flight(self, name):
        with self._lock:
            return name in self._inflight

    def slot(self, name):
        """Lock held by every pass over ``name``.

        Anything else that writes the backend secret of ``name`` takes it too,
        so it runs between passes and never under one.
        """
        with self._lock:
            return self._slots.setdefault(name, threading.Lock())

    def shutdown(self, wait=True):
        self._executor.shutdown(wait=wait)

    def _drain(self, name):
        records = []
        try:
            while True:
                records.extend(self.reconcile_once(name))
                with self._lock:
                    entry = self._inflight[name]
                    if not entry.rerun:
                        del self._inflight[name]
                        return records
                    entry.rerun = False
        except BaseException:
            with self._lock:
                self._inflight.pop(name, None)
            raise

    # -- one pass ---------------------------------------------------------------------------

    def call_backend(self, operation, *args):
        """Run an adapter call, retrying ``Unavailable`` with exponential backoff."""
        retrying = Retrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._backoff_multiplier, max=self._backoff_max),
            retry=retry_if_exception_type(Unavailable),
            sleep=self._sleep,
            before_sleep=_log_retry,
            reraise=True,
        )
        return retrying(operation, *args)

    def _record(self, records, record):
        records.append(record)
        self._emit(Event.from_record(record, timestamp=self._clock()))
        return record

    def reconcile_once(self, name):
        """Run a single pass over ``name`` and return its records."""
        with self.slot(name):
            return self._pass(name)

    def _pass(self, name):
        records = []
        try:
            descriptor = self._store.get(name)
        except DescriptorNotFound:
            logging.getLogger(__name__).info(f"{name} no longer declared, nothing to reconcile")
            return records
        if self._conditions.is_blocked(name):
            logging.getLogger(__name__).info(f"{name} is blocked, skipping reconcile")
            return records

        action = ReconcileAction.NOOP
        observed_version = None
        desired_version = descriptor.current_version
        try:
            adapter = self._adapters.for_descriptor(descriptor)
            try:
                observed = self.call_backend(adapter.get, name)
            except SecretNotFound:
                observed = None

            if observed is None:
                action = ReconcileAction.CREATE
                written = self.call_backend(adapter.put, name, self._providers.seed(descriptor))
            else:
                observed_version = observed.version
                self._adopt(name, observed)
                drift = observed.keys != frozenset(descriptor.keys)
                if not drift and not self._scheduler.is_due(name):
                    self._conditions.clear(name, only=(Condition.DEGRADED,))
                    self._record(records, ReconcileRecord(
                        descriptor_name=name, action=ReconcileAction.NOOP,
                        result=ReconcileResult.SUCCESS, observed_version=observed.version,
                        desired_version=observed.version))
                    if self._scheduler.state(name) is RotationState.IDLE:
                        records.extend(self._revoke_superseded(name, adapter))
                    return records
                action = ReconcileAction.ROTATE
                reason = "declared keys changed" if drift else "rotation due"
                logging.getLogger(__name__).info(f"Rotating {name}: {reason}")
                written = self.call_backend(adapter.put, name,
                                            self._providers.rotate(descriptor, observed))
            desired_version = written.version
            if observed is not None and written.version == observed.version:
                detail = "provider returned the current values"
            else:
                self._history.activate(written)
                self._store.set_current_version(name, written.version)
                detail = None
            if action is ReconcileAction.ROTATE:
                self._scheduler.rotation_started(name, written.version)
            else:
                self._scheduler.adopt(name, written.created_at)
        except Unavailable as e:
            self._conditions.degrade(name, str(e))
            self._record(records, ReconcileRecord(
                descriptor_name=name, action=action, result=ReconcileResult.RETRYABLE,
                observed_version=observed_version, desired_version=desired_version, detail=str(e)))
            return records
        except (Denied, BackendError, InvalidDescriptor, ConfigError) as e:
            self._conditions.set(name, Condition.BLOCKED, str(e))
            self._record(records, ReconcileRecord(
                descriptor_name=name, action=action, result=ReconcileResult.FATAL,
                observed_version=observed_version, desired_version=desired_version, detail=str(e)))
            return records
        except Exception as e:
            logging.getLogger(__name__).exception(f"Unexpected failure reconciling {name}")
            self._conditions.degrade(name, type(e).__name__)
            self._record(records, ReconcileRecord(
                descriptor_name=name, action=action, result=ReconcileResult.RETRYABLE,
                observed_version=observed_version, desired_version=desired_version,
                detail=type(e).__name__))
            return records

        self._conditions.clear(name, only=(Condition.DEGRADED,))
        self._record(records, ReconcileRecord(
            descriptor_name=name, action=action, result=ReconcileResult.SUCCESS,
            observed_version=observed_version, desired_version=written.version, detail=detail))
        try:
            records.extend(self._roll_out(name, written.version, adapter))
        except DescriptorNotFound:
            logging.getLogger(__name__).info(f"{name} was removed while rolling out")
        except Exception as e:
            logging.getLogger(__name__).exception(
                f"Rollout of version {written.version} of {name} aborted")
            self._rollout_failed(name, written.version, f"rollout aborted: {type(e).__name__}")
        return records

    def _adopt(self, name, observed):
        """Take the backend's view when it differs from what the history knows."""
        active = self._history.active(name)
        if active is not None and active.version == observed.version:
            return
        if active is not None:
            logging.getLogger(__name__).warning(
                f"Backend holds version {observed.version} of {name}, expected {active.version}")
        self._history.activate(observed)
        self._store.set_current_version(name, observed.version)
        self._scheduler.adopt(name, observed.created_at)

    def _roll_out(self, name, version, adapter):
        descriptor = self._store.get(name)
        lagging = tuple(b for b in descriptor.consumers if b.last_applied_version != version)
        if lagging:
            outcome = self._notifier.rollout(RolloutBatch(descriptor_name=name, version=version,
                                                          bindings=lagging))
            if not outcome.completed:
                failure = RolloutFailed(name, version, outcome.failed_wave, outcome.unhealthy)
                self._rollout_failed(name, version, str(failure),
                                     f"{str(failure)}; still pending {', '.join(outcome.pending)}")
                return []
            self._emit(Event(timestamp=self._clock(), descriptor_name=name, action=ROLLOUT_ACTION,
                             result=ReconcileResult.SUCCESS.value, version=version,
                             detail=f"{len(outcome.applied)} consumers updated"))
        self._scheduler.rollout_completed(name, version)
        return self._revoke_superseded(name, adapter)

    def _rollout_failed(self, name, version, reason, detail=None):
        # the scheduler stays Rotating so the rotation can stall or be retried
        self._conditions.set(name, Condition.ROLLOUT_FAILED, reason)
        self._emit(Event(timestamp=self._clock(), descriptor_name=name, action=ROLLOUT_ACTION,
                         result=ReconcileResult.FATAL.value, version=version,
                         detail=detail or reason))

    def _revoke_superseded(self, name, adapter):
        records = []
        bindings = self._store.get(name).consumers
        for version in self._history.revocable(name, bindings):
            try:
                self.call_backend(adapter.revoke, name, version)
                self._history.revoke(name, version, self._store.get(name).consumers)
            except Unavailable as e:
                result, detail = ReconcileResult.RETRYABLE, str(e)
            except VersionStillReferenced as e:
                # a consumer was bound to the old version meanwhile
                result, detail = ReconcileResult.RETRYABLE, str(e)
            except BackendError as e:
                self._conditions.set(name, Condition.BLOCKED, str(e))
                result, detail = ReconcileResult.FATAL, str(e)
            else:
                result, detail = ReconcileResult.SUCCESS, None
                logging.getLogger(__name__).info(f"Revoked version {version} of {name}")
            self._record(records, ReconcileRecord(
                descriptor_name=name, action=ReconcileAction.REVOKE, result=result,
                desired_version=version, detail=detail))
            if result is ReconcileResult.FATAL:
                break
        return records


def _log_failure(future):
    if not future.cancelled() and future.exception() is not None:
        logging.getLogger(__name__).error(
            "Reconcile pass aborted", exc_info=future.exception())


def _log_retry(retry_state):
    error = retry_state.outcome.exception()
    logging.getLogger(__name__).warning(
        f"Attempt {retry_state.attempt_number} failed: {error}; backing off "
        f"{retry_state.next_action.sleep:.1f}s")
