"""
Shared fixtures: a scripted container runtime that records every call.
"""
import threading
import time
from typing import Dict, List, Optional

import pytest

from topoctl.MODELS.controller_settings import ControllerSettings, RetryPolicy
from topoctl.MODELS.service_definition import PortMapping, Service
from topoctl.RUNNERS.container_runtime import ContainerRuntime, ProbeResult, ProbeStatus


class FakeHandle:
    def __init__(self, name: str):
        self.name = name
        self.stopped = False
        self.killed = False


class ScriptedRuntime(ContainerRuntime):
    """
    Probe results are scripted per service as a list of statuses; once a
    script runs out its last entry repeats. Services without a script are
    ready on the first probe.
    """

    def __init__(self,
                 probes: Optional[Dict[str, List[ProbeStatus]]] = None,
                 fail_start: tuple = (),
                 stop_hangs: Optional[Dict[str, float]] = None,
                 start_delay: float = 0.0):
        self.probes = {name: list(script) for name, script in (probes or {}).items()}
        self.fail_start = set(fail_start)
        self.stop_hangs = stop_hangs or {}
        self.start_delay = start_delay
        self.events: List[tuple] = []
        self.handles: Dict[str, FakeHandle] = {}
        self._lock = threading.Lock()

    def _record(self, action: str, name: str) -> None:
        with self._lock:
            self.events.append((action, name))

    def start(self, service: Service) -> FakeHandle:
        self._record("start", service.name)
        if self.start_delay:
            time.sleep(self.start_delay)
        if service.name in self.fail_start:
            raise RuntimeError(f"image for {service.name} not found")
        handle = FakeHandle(service.name)
        with self._lock:
            self.handles[service.name] = handle
        return handle

    def probe(self, handle: FakeHandle) -> ProbeResult:
        self._record("probe", handle.name)
        with self._lock:
            script = self.probes.get(handle.name)
            if not script:
                status = ProbeStatus.READY
            elif len(script) > 1:
                status = script.pop(0)
            else:
                status = script[0]
        return ProbeResult(status, f"{handle.name} {status.value}")

    def stop(self, handle: FakeHandle, timeout: float) -> None:
        self._record("stop", handle.name)
        hang = self.stop_hangs.get(handle.name)
        if hang:
            time.sleep(hang)
        handle.stopped = True
        self._record("stopped", handle.name)

    def kill(self, handle: FakeHandle) -> None:
        self._record("kill", handle.name)
        handle.killed = True

    def calls(self, action: str) -> List[str]:
        with self._lock:
            return [name for act, name in self.events if act == action]


def make_service(name, depends_on=(), host_ports=(), **kwargs) -> Service:
    ports = list(kwargs.pop("ports", [])) + [PortMapping(container=port, host=port) for port in host_ports]
    return Service(name=name, image=f"{name}:latest", depends_on=tuple(depends_on),
                   ports=ports, **kwargs)


@pytest.fixture
def fast_settings():
    """Settings with no real backoff so tests run instantly."""
    return ControllerSettings(
        retry=RetryPolicy(max_retries=3, base_delay=0.0, max_delay=0.0),
        stop_timeout=0.2,
        kill_grace=0.2,
    )
