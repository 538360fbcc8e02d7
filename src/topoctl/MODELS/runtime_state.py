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
Runtime state of services as seen by the lifecycle controller.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple


class ServiceState(str, Enum):
    """
    Pending -> Starting -> Ready -> Stopping -> Stopped, or Starting -> Failed.
    """

    PENDING = "pending"
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"
    STOPPING = "stopping"
    STOPPED = "stopped"


# Allowed transitions; anything else is a controller bug.
TRANSITIONS: Dict[ServiceState, Tuple[ServiceState, ...]] = {
    ServiceState.PENDING: (ServiceState.STARTING, ServiceState.STOPPED),
    ServiceState.STARTING: (ServiceState.READY, ServiceState.FAILED, ServiceState.STOPPING),
    ServiceState.READY: (ServiceState.STOPPING,),
    ServiceState.STOPPING: (ServiceState.STOPPED,),
    ServiceState.STOPPED: (ServiceState.PENDING,),
    ServiceState.FAILED: (ServiceState.PENDING,),
}


@dataclass(frozen=True)
class Transition:
    """A state change, stamped with a monotonic clock and a global sequence number."""

    state: ServiceState
    at: float
    seq: int


@dataclass
class ServiceStatus:
    """Snapshot of one service's runtime state."""

    name: str
    state: ServiceState
    error: Optional[Exception] = None
    probe_attempts: int = 0
    transitions: List[Transition] = field(default_factory=list)

    def entered(self, state: ServiceState) -> Optional[Transition]:
        """The most recent transition into ``state``, if any."""
        for transition in reversed(self.transitions):
            if transition.state == state:
                return transition
        return None

    @property
    def error_message(self) -> str:
        return str(self.error) if self.error else ""


@dataclass
class StartReport:
    """
    Outcome of a start_all call: the final state of every service and,
    for failures, the last error encountered.
    """

    services: Dict[str, ServiceStatus]

    @property
    def ok(self) -> bool:
        return all(s.state == ServiceState.READY for s in self.services.values())

    @property
    def failed(self) -> List[str]:
        return [name for name, s in self.services.items() if s.state != ServiceState.READY]

    def state_of(self, name: str) -> ServiceState:
        return self.services[name].state

    def error_of(self, name: str) -> Optional[Exception]:
        return self.services[name].error
