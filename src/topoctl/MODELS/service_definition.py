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
Models for defining services, their published ports, health checks and volumes.
"""
from typing import List, Dict, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field, field_validator


class PortMapping(BaseModel):
    """
    Publishes a container port on the host.
    A mapping without a host port is exposed but never conflicts.
    """
    model_config = ConfigDict(frozen=True)

    container: int = Field(gt=0, lt=65536)
    host: Optional[int] = Field(default=None, gt=0, lt=65536)
    protocol: str = "tcp"

    def __str__(self) -> str:
        if self.host is None:
            return f"{self.container}/{self.protocol}"
        return f"{self.host}:{self.container}/{self.protocol}"


class HealthCheck(BaseModel):
    """
    Docker-style readiness test, e.g. ["CMD-SHELL", "pg_isready"].
    """
    model_config = ConfigDict(frozen=True)

    test: List[str]
    timeout: float = 30.0

    @field_validator("test")
    @classmethod
    def _has_command(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("healthcheck test must not be empty")
        if value[0] in ("CMD", "CMD-SHELL") and not any(part.strip() for part in value[1:]):
            raise ValueError(f"healthcheck {value[0]} test has no command")
        return value


class VolumeMount(BaseModel):
    """
    Defines a mapping between a named volume or host path and a service path.
    """
    model_config = ConfigDict(frozen=True)

    source: str
    target: str
    read_only: bool = False

    @property
    def is_named(self) -> bool:
        """Named volumes carry no path separators and are managed by topoctl."""
        return not (self.source.startswith(("/", ".", "~")) or "/" in self.source)


class Service(BaseModel):
    """
    Immutable description of a single deployable unit.
    """
    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    image: str = ""
    container_name: Optional[str] = None

    # Execution
    command: List[str] = []
    working_dir: Optional[str] = None

    # Environment
    environment: Dict[str, str] = {}
    env_files: List[str] = []
    required_env: List[str] = []

    # Networking
    ports: List[PortMapping] = []

    # Storage
    volumes: List[VolumeMount] = []

    # Lifecycle
    depends_on: Tuple[str, ...] = ()
    healthcheck: Optional[HealthCheck] = None

    @field_validator("depends_on", mode="before")
    @classmethod
    def _unique_dependencies(cls, value):
        seen = []
        for dep in value or ():
            if dep not in seen:
                seen.append(dep)
        return tuple(seen)

    @property
    def host_ports(self) -> List[int]:
        return [p.host for p in self.ports if p.host is not None]


class Volume(BaseModel):
    """
    Persistent storage unit. Its data outlives the owning service's process
    and is only removed by an explicit destroy.
    """
    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    mount_path: str
    read_only: bool = False
