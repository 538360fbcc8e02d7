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
Error taxonomy for topology construction, service lifecycle and volume binding.
"""
from typing import Iterable, Optional


class TopoctlError(Exception):
    """Base class for every error raised by topoctl."""


# Construction time

class TopologyError(TopoctlError):
    """A structural invariant of the topology was violated."""


class CyclicDependency(TopologyError):
    def __init__(self, cycle: Iterable[str]):
        self.cycle = list(cycle)
        super().__init__(f"Circular dependency detected: {' -> '.join(self.cycle)}")


class UnknownDependency(TopologyError):
    def __init__(self, service: str, dependency: str):
        self.service = service
        self.dependency = dependency
        super().__init__(f"Service {service} depends on undeclared service {dependency}")


class UnknownOwner(TopologyError):
    def __init__(self, volume: str, owner: str):
        self.volume = volume
        self.owner = owner
        super().__init__(f"Volume {volume} is owned by undeclared service {owner}")


class PortConflict(TopologyError):
    def __init__(self, host_port: int, service: str, holder: str):
        self.host_port = host_port
        self.service = service
        self.holder = holder
        super().__init__(
            f"Host port {host_port} of service {service} is already published by {holder}"
        )


class DuplicateService(TopologyError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Service {name} is declared more than once")


class DuplicateVolume(TopologyError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Volume {name} is declared more than once")


class ConfigurationError(TopoctlError):
    """The deployment descriptor or one of its sources is invalid."""


class ComposeError(ConfigurationError):
    pass


class InterpolationError(ConfigurationError):
    pass


class MissingEnvironment(ConfigurationError):
    def __init__(self, service: str, keys: Iterable[str]):
        self.service = service
        self.keys = sorted(keys)
        super().__init__(
            f"Service {service} is missing required environment: {', '.join(self.keys)}"
        )


# Runtime, recorded per service

class ServiceError(TopoctlError):
    """
    Failure of a single service. Recorded in the controller's status and
    start report rather than raised across service boundaries.
    """

    def __init__(self, service: str, message: str):
        self.service = service
        super().__init__(message)


class DependencyFailed(ServiceError):
    def __init__(self, service: str, dependency: str):
        self.dependency = dependency
        super().__init__(service, f"Dependency {dependency} of {service} failed")


class ProbeTimeout(ServiceError):
    def __init__(self, service: str, attempts: int, last_output: Optional[str] = None):
        self.attempts = attempts
        self.last_output = last_output
        message = f"Service {service} did not become ready after {attempts} probes"
        if last_output:
            message += f": {last_output}"
        super().__init__(service, message)


class StartActionFailed(ServiceError):
    def __init__(self, service: str, cause: BaseException):
        self.cause = cause
        super().__init__(service, f"Runtime failed to start {service}: {cause}")


class StartCancelled(ServiceError):
    def __init__(self, service: str):
        super().__init__(service, f"Start of {service} was cancelled")


class ControllerBusy(TopoctlError):
    pass


# State store

class VolumeError(TopoctlError):
    """Caller-correctable misuse of a volume binding."""


class VolumeAlreadyBound(VolumeError):
    def __init__(self, volume: str, owner: str, requested: str):
        self.volume = volume
        self.owner = owner
        self.requested = requested
        super().__init__(
            f"Volume {volume} is attached to {owner}, cannot attach it to {requested}"
        )


class VolumeInUse(VolumeError):
    def __init__(self, volume: str, owner: str):
        self.volume = volume
        self.owner = owner
        super().__init__(f"Volume {volume} is still attached to {owner}")


class UnknownVolume(VolumeError):
    def __init__(self, volume: str):
        self.volume = volume
        super().__init__(f"Volume {volume} is not declared in the topology")
