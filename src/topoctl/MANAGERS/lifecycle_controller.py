# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.


"""
Lifecycle control for a service topology: dependency-ordered, concurrent
startup with readiness probing, reverse-ordered shutdown, and cancellation.
"""
import logging
import threading
import time
from typing import Any, Dict, List, Optional, Tuple

from .readiness_prober import ReadinessProber
from .volume_manager import VolumeBinder
from ..MODELS.controller_settings import ControllerSettings
from ..MODELS.runtime_state import (
    TRANSITIONS,
    ServiceState,
    ServiceStatus,
    StartReport,
    Transition,
)
from ..MODELS.topology import Topology
from ..RUNNERS.container_runtime import ContainerRuntime, ProbeResult
from ..errors import (
    ControllerBusy,
    DependencyFailed,
    ProbeTimeout,
    ServiceError,
    StartActionFailed,
    StartCancelled,
    VolumeError,
)

logger = logging.getLogger(__name__)

# States in which a dependency can no longer become ready during the current run.
_UNAVAILABLE = (ServiceState.FAILED, ServiceState.STOPPING, ServiceState.STOPPED)
# States in which a service still holds, or may still acquire, a runtime handle.
_ACTIVE = (ServiceState.STARTING, ServiceState.READY, ServiceState.STOPPING)


class _ServiceRecord:
    """
    Mutable runtime state of one service. Mutated only while holding ``lock``.
    """

    def __init__(self, name: str):
        self.name = name
        self.state = ServiceState.PENDING
        self.handle: Any = None
        self.error: Optional[Exception] = None
        self.probe_attempts = 0
        self.transitions: List[Transition] = []
        self.lock = threading.RLock()


class LifecycleController:
    """
    Drives every service of a topology through
    Pending -> Starting -> Ready -> Stopping -> Stopped (or Failed).

    Independent branches of the dependency graph start and stop in parallel,
    one worker thread per service. A failure is isolated to the failing
    service and its dependents; unrelated branches keep going.
    """

    def __init__(self,
                 topology: Topology,
                 runtime: ContainerRuntime,
                 settings: Optional[ControllerSettings] = None,
                 binder: Optional[VolumeBinder] = None):
        """
        :param topology: The validated topology. It must not change afterwards.
        :param runtime: Runtime that starts, probes and stops services.
        :param settings: Retry and timeout settings.
        :param binder: Volume binder; volumes are not attached when omitted.
        """
        self.topology = topology
        self.runtime = runtime
        self.settings = settings or ControllerSettings()
        self.binder = binder

        self._cancelled = threading.Event()
        self._changed = threading.Condition()
        self._run_lock = threading.Lock()
        self._seq_lock = threading.Lock()
        self._seq = 0
        self.prober = ReadinessProber(runtime, self.settings.retry, self._cancelled)

        self._records: Dict[str, _ServiceRecord] = {}
        for name in topology.service_names:
            record = _ServiceRecord(name)
            record.transitions.append(self._stamp(ServiceState.PENDING))
            self._records[name] = record

    # Public operations

    def start_all(self) -> StartReport:
        """
        Starts every service that is not already ready, dependencies first.

        Never raises for an individual service failure: the report carries
        each service's final state and last error.

        :raises ControllerBusy: If a start or stop is already running.
        """
        if not self._run_lock.acquire(blocking=False):
            raise ControllerBusy("A start or stop of this topology is already in progress")
        try:
            self._cancelled.clear()
            order = self.topology.resolve_start_order()
            logger.info("Starting services in order: %s", ", ".join(order))

            for name in order:
                self._reset(self._records[name])

            workers = [
                threading.Thread(target=self._start_service, args=(name,),
                                 name=f"topoctl-start-{name}", daemon=True)
                for name in order
                if self._records[name].state == ServiceState.PENDING
            ]
            for worker in workers:
                worker.start()
            for worker in workers:
                worker.join()

            report = StartReport(services=self.status())
            if report.ok:
                logger.info("All %d services are ready", len(order))
            else:
                for name in report.failed:
                    logger.warning("Service %s ended %s: %s", name,
                                   report.state_of(name).value, report.services[name].error_message)
            return report
        finally:
            self._run_lock.release()

    def stop_all(self) -> Dict[str, ServiceStatus]:
        """
        Stops services in reverse dependency order: a service is stopped only
        once all of its dependents are down. Services that never started are
        marked stopped; failed services keep their state. Calling it again is
        a no-op.

        An in-flight ``start_all`` is cancelled first.
        """
        self.cancel()
        with self._run_lock:
            order = self.topology.resolve_stop_order()
            logger.info("Stopping services in order: %s", ", ".join(order))
            workers = [
                threading.Thread(target=self._stop_service, args=(name,),
                                 name=f"topoctl-stop-{name}", daemon=True)
                for name in order
            ]
            for worker in workers:
                worker.start()
            for worker in workers:
                worker.join()
            return self.status()

    def cancel(self) -> None:
        """
        Interrupts dependency waits and probe backoff. Services that are
        starting move to Stopping right away; their workers release the
        runtime handle and finish them as Stopped.
        """
        self._cancelled.set()
        for record in self._records.values():
            with record.lock:
                if record.state == ServiceState.STARTING:
                    logger.info("Cancelling start of %s", record.name)
                    self._set_state(record, ServiceState.STOPPING)
        with self._changed:
            self._changed.notify_all()

    def status(self) -> Dict[str, ServiceStatus]:
        """Current state of every service, in the topology's insertion order."""
        snapshot = {}
        for name, record in self._records.items():
            with record.lock:
                snapshot[name] = ServiceStatus(
                    name=name,
                    state=record.state,
                    error=record.error,
                    probe_attempts=record.probe_attempts,
                    transitions=list(record.transitions),
                )
        return snapshot

    # Start

    def _start_service(self, name: str) -> None:
        record = self._records[name]
        service = self.topology.service(name)

        try:
            blocker = self._wait_for_dependencies(name)
        except StartCancelled as e:
            self._record_error(record, e)
            return
        if blocker is not None:
            logger.warning("Not starting %s: dependency %s failed", name, blocker)
            self._record_error(record, DependencyFailed(name, blocker))
            return

        if not self._transition(record, ServiceState.STARTING, expect=(ServiceState.PENDING,)):
            return

        try:
            self._attach_volumes(name)
        except VolumeError as e:
            self._fail(record, e)
            return

        with record.lock:
            cancelled = record.state != ServiceState.STARTING
        if cancelled:
            self._finish_cancelled(record)
            return

        logger.info("Starting service: %s", name)
        try:
            handle = self.runtime.start(service)
        except Exception as e:
            logger.exception("Runtime failed to start %s", name)
            self._fail(record, StartActionFailed(name, e))
            return

        with record.lock:
            record.handle = handle
            still_starting = record.state == ServiceState.STARTING
        if not still_starting:
            self._finish_cancelled(record)
            return

        def count_attempt(attempt: int, result: ProbeResult) -> None:
            with record.lock:
                record.probe_attempts = attempt

        try:
            self.prober.wait_ready(name, handle, on_attempt=count_attempt)
        except StartCancelled:
            self._finish_cancelled(record)
            return
        except ProbeTimeout as e:
            self._fail(record, e)
            return

        if self._transition(record, ServiceState.READY, expect=(ServiceState.STARTING,)):
            logger.info("Service %s is ready", name)
        else:
            self._finish_cancelled(record)

    def _wait_for_dependencies(self, name: str) -> Optional[str]:
        """
        Blocks until every dependency is ready.

        :return: None once all dependencies are ready, or the name of a
            dependency that can no longer become ready.
        :raises StartCancelled: If cancellation is requested while waiting.
        """
        deps = self.topology.dependencies_of(name)
        with self._changed:
            while True:
                if self._cancelled.is_set():
                    raise StartCancelled(name)
                for dep in deps:
                    if self._is_blocked(self._records[dep]):
                        return dep
                if all(self._records[dep].state == ServiceState.READY for dep in deps):
                    return None
                self._changed.wait()

    @staticmethod
    def _is_blocked(record: _ServiceRecord) -> bool:
        if record.state in _UNAVAILABLE:
            return True
        return record.state == ServiceState.PENDING and isinstance(record.error, ServiceError)

    def _fail(self, record: _ServiceRecord, error: Exception) -> None:
        if self._transition(record, ServiceState.FAILED, error=error, expect=(ServiceState.STARTING,)):
            logger.error("Service %s failed: %s", record.name, error)
        else:
            # cancel() got there first
            self._finish_cancelled(record)

    def _finish_cancelled(self, record: _ServiceRecord) -> None:
        with record.lock:
            if record.state == ServiceState.STARTING:
                self._set_state(record, ServiceState.STOPPING)
            record.error = StartCancelled(record.name)
            handle, record.handle = record.handle, None
        if handle is not None:
            self._terminate(record.name, handle)
        self._transition(record, ServiceState.STOPPED, expect=(ServiceState.STOPPING,))
        self._detach_volumes(record.name)

    # Stop

    def _stop_service(self, name: str) -> None:
        dependents = [self._records[d] for d in self.topology.dependents_of(name)]
        with self._changed:
            self._changed.wait_for(lambda: all(self._is_down(d) for d in dependents))

        record = self._records[name]
        with record.lock:
            state = record.state
            if state == ServiceState.PENDING:
                self._set_state(record, ServiceState.STOPPED)
                handle = None
            elif state == ServiceState.READY:
                self._set_state(record, ServiceState.STOPPING)
                handle = record.handle
            elif state == ServiceState.FAILED:
                handle = record.handle
            else:
                return
        self._notify()

        if handle is not None:
            logger.info("Stopping service: %s", name)
            self._terminate(name, handle)
        with record.lock:
            record.handle = None
            if record.state == ServiceState.STOPPING:
                self._set_state(record, ServiceState.STOPPED)
        self._notify()
        self._detach_volumes(name)

    @staticmethod
    def _is_down(record: _ServiceRecord) -> bool:
        # A failed service may still hold a live handle until it is released.
        return record.state not in _ACTIVE and record.handle is None

    def _terminate(self, name: str, handle: Any) -> None:
        """
        Best-effort stop: a graceful stop bounded by ``stop_timeout``, then a
        forced kill. Errors are logged, never raised.
        """
        timeout = self.settings.stop_timeout
        if self._run_bounded(f"stop-{name}", lambda: self.runtime.stop(handle, timeout),
                             timeout + self.settings.kill_grace):
            return
        logger.warning("Service %s did not stop within %.1fs, forcing termination", name, timeout)
        if not self._run_bounded(f"kill-{name}", lambda: self.runtime.kill(handle),
                                 self.settings.kill_grace):
            logger.error("Service %s could not be killed; marking it stopped anyway", name)

    @staticmethod
    def _run_bounded(label: str, action, timeout: float) -> bool:
        """Runs ``action`` in a helper thread. True if it returned in time without raising."""
        outcome: List[bool] = []

        def run():
            try:
                action()
            except Exception as e:
                logger.warning("%s raised %s: %s", label, type(e).__name__, e)
                outcome.append(False)
            else:
                outcome.append(True)

        worker = threading.Thread(target=run, name=f"topoctl-{label}", daemon=True)
        worker.start()
        worker.join(timeout)
        return bool(outcome) and outcome[0]

    # Volumes

    def _attach_volumes(self, name: str) -> None:
        if self.binder is None:
            return
        for volume in self.topology.volumes_of(name):
            self.binder.attach(volume, name)

    def _detach_volumes(self, name: str) -> None:
        if self.binder is None:
            return
        for volume in self.topology.volumes_of(name):
            self.binder.detach(volume)

    # State bookkeeping

    def _reset(self, record: _ServiceRecord) -> None:
        """Puts a stopped or failed service back to Pending for a new start."""
        with record.lock:
            state = record.state
            if state not in (ServiceState.STOPPED, ServiceState.FAILED, ServiceState.PENDING):
                return
            handle, record.handle = record.handle, None
        if handle is not None:
            self._terminate(record.name, handle)
            self._detach_volumes(record.name)
        with record.lock:
            record.error = None
            record.probe_attempts = 0
            if record.state != ServiceState.PENDING:
                self._set_state(record, ServiceState.PENDING)

    def _transition(self,
                    record: _ServiceRecord,
                    state: ServiceState,
                    error: Optional[Exception] = None,
                    expect: Optional[Tuple[ServiceState, ...]] = None) -> bool:
        """
        Moves ``record`` to ``state`` if it is currently in one of ``expect``.
        Returns False, changing nothing, otherwise.
        """
        with record.lock:
            if expect is not None and record.state not in expect:
                return False
            self._set_state(record, state)
            if error is not None:
                record.error = error
        self._notify()
        return True

    def _set_state(self, record: _ServiceRecord, state: ServiceState) -> None:
        # Caller holds record.lock.
        if state not in TRANSITIONS[record.state]:
            raise RuntimeError(
                f"Illegal transition for {record.name}: {record.state.value} -> {state.value}"
            )
        record.state = state
        record.transitions.append(self._stamp(state))
        logger.debug("%s -> %s", record.name, state.value)

    def _record_error(self, record: _ServiceRecord, error: Exception) -> None:
        with record.lock:
            record.error = error
        self._notify()

    def _stamp(self, state: ServiceState) -> Transition:
        with self._seq_lock:
            self._seq += 1
            return Transition(state=state, at=time.monotonic(), seq=self._seq)

    def _notify(self) -> None:
        with self._changed:
            self._changed.notify_all()
