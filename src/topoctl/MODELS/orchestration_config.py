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
Models for overall orchestration configuration.
"""
import logging
from typing import Dict, List, Tuple
from pydantic import BaseModel, Field

from .controller_settings import ControllerSettings
from .service_definition import Service, Volume
from .topology import Topology
from ..errors import ComposeError

logger = logging.getLogger(__name__)


class OrchestrationConfig(BaseModel):
    """
    Complete configuration for a multi-service stack.
    Equivalent to a parsed docker-compose.yml file.
    """
    name: str = "default"
    services: Dict[str, Service]
    volumes: List[str] = []
    settings: ControllerSettings = Field(default_factory=ControllerSettings)

    def named_volumes(self) -> List[Tuple[Volume, str]]:
        """
        Pairs every named volume with the service that mounts it.

        :raises ComposeError: If a mounted volume is not declared at the top
            level, or more than one service mounts the same volume.
        """
        owned: Dict[str, Tuple[Volume, str]] = {}
        for service in self.services.values():
            for mount in service.volumes:
                if not mount.is_named:
                    logger.debug("Bind mount %s of %s is not managed", mount.source, service.name)
                    continue
                if mount.source not in self.volumes:
                    raise ComposeError(
                        f"Service {service.name} refers to undefined volume {mount.source}"
                    )
                if mount.source in owned:
                    raise ComposeError(
                        f"Volume {mount.source} is mounted by both {owned[mount.source][1]} "
                        f"and {service.name}; a volume has a single owner"
                    )
                owned[mount.source] = (
                    Volume(name=mount.source, mount_path=mount.target, read_only=mount.read_only),
                    service.name,
                )
        for unused in sorted(set(self.volumes) - set(owned)):
            logger.info("Volume %s is declared but not mounted by any service", unused)
        return list(owned.values())

    def to_topology(self) -> Topology:
        """
        :raises TopologyError: If the declarations violate a topology invariant.
        """
        return Topology.from_services(self.services.values(), self.named_volumes())
