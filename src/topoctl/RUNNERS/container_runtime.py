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
The narrow interface through which the controller drives a container runtime.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..MODELS.service_definition import Service


class ProbeStatus(str, Enum):
    READY = "ready"
    NOT_READY = "not_ready"
    ERRORED = "errored"


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of one readiness probe."""

    status: ProbeStatus
    output: str = ""

    @property
    def ready(self) -> bool:
        return self.status == ProbeStatus.READY

    @classmethod
    def ok(cls, output: str = "") -> "ProbeResult":
        return cls(ProbeStatus.READY, output)

    @classmethod
    def not_ready(cls, output: str = "") -> "ProbeResult":
        return cls(ProbeStatus.NOT_READY, output)

    @classmethod
    def errored(cls, output: str = "") -> "ProbeResult":
        return cls(ProbeStatus.ERRORED, output)


class ContainerRuntime(ABC):
    """
    Starts, stops and probes services. The controller never pulls images,
    creates networks or mounts filesystems itself; it only calls these
    operations and reacts to their results.
    """

    @abstractmethod
    def start(self, service: Service) -> Any:
        """
        Starts a service and returns an opaque handle for it.
        Raises if the service could not be started at all.
        """

    @abstractmethod
    def stop(self, handle: Any, timeout: float) -> None:
        """Gracefully stops the service behind ``handle``, waiting at most ``timeout`` seconds."""

    @abstractmethod
    def probe(self, handle: Any) -> ProbeResult:
        """Checks whether the service behind ``handle`` is ready to serve dependents."""

    def kill(self, handle: Any) -> None:
        """
        Forcefully terminates the service. Called when ``stop`` overruns its
        timeout. Runtimes without a stronger signal than ``stop`` may keep
        this default.
        """
        return None
