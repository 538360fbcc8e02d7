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
The static service topology: services, their dependency edges and the volumes they own.
"""
from typing import Dict, Iterable, List, Optional, Tuple

from .service_definition import Service, Volume
from ..RUNNERS.dependency_resolver import DependencyResolver
from ..errors import (
    CyclicDependency,
    DuplicateService,
    DuplicateVolume,
    PortConflict,
    UnknownDependency,
    UnknownOwner,
)


class Topology:
    """
    Ordered set of services plus the volumes they reference.

    Every mutation validates the structural invariants (acyclic dependency
    graph, known dependencies and owners, unique host ports) before it is
    applied, so a failed call leaves the topology unchanged.
    """

    def __init__(self):
        self._services: Dict[str, Service] = {}
        self._volumes: Dict[str, Volume] = {}
        self._volume_owners: Dict[str, str] = {}
        self._host_ports: Dict[int, str] = {}
        self._resolver = DependencyResolver()

    @classmethod
    def from_services(cls,
                      services: Iterable[Service],
                      volumes: Iterable[Tuple[Volume, str]] = ()) -> "Topology":
        """
        Builds a topology from declarations listed in any order.

        Compose files routinely declare a service before the services it
        depends on, so the whole set is validated first and then added in
        dependency order. Nothing is returned unless every declaration is valid.

        :param services: Service declarations in declaration order.
        :param volumes: (volume, owner name) pairs.
        :raises TopologyError: On any violated invariant.
        """
        declared: Dict[str, Service] = {}
        for service in services:
            if service.name in declared:
                raise DuplicateService(service.name)
            declared[service.name] = service

        for service in declared.values():
            for dep in service.depends_on:
                if dep not in declared:
                    raise UnknownDependency(service.name, dep)

        graph = {name: svc.depends_on for name, svc in declared.items()}
        cycle = DependencyResolver().find_cycle(graph)
        if cycle:
            raise CyclicDependency(cycle)

        topology = cls()
        for name in topology._resolver.resolve_order(graph):
            topology.add_service(declared[name])
        for volume, owner in volumes:
            topology.add_volume(volume, owner)
        return topology

    def add_service(self, service: Service, depends_on: Optional[Iterable[str]] = None) -> None:
        """
        Declares a service.

        :param service: The service to declare.
        :param depends_on: Dependency names; defaults to ``service.depends_on``.
        :raises DuplicateService: If the name is already declared.
        :raises CyclicDependency: If the service depends on itself.
        :raises UnknownDependency: If a dependency is not declared yet.
        :raises PortConflict: If a host port is already published.
        """
        deps = service.depends_on if depends_on is None else tuple(dict.fromkeys(depends_on))

        if service.name in self._services:
            raise DuplicateService(service.name)
        if service.name in deps:
            raise CyclicDependency([service.name, service.name])
        for dep in deps:
            if dep not in self._services:
                raise UnknownDependency(service.name, dep)

        # Edges only point at services that already exist, so no cycle can close here.
        claimed: Dict[int, str] = {}
        for port in service.host_ports:
            holder = self._host_ports.get(port) or claimed.get(port)
            if holder is not None:
                raise PortConflict(port, service.name, holder)
            claimed[port] = service.name

        if deps != service.depends_on:
            service = service.model_copy(update={"depends_on": deps})
        self._services[service.name] = service
        self._host_ports.update(claimed)

    def add_volume(self, volume: Volume, owner: str) -> None:
        """
        Declares a volume owned by a service.

        :raises UnknownOwner: If the owner is not a declared service.
        :raises DuplicateVolume: If the volume name is already declared.
        """
        if owner not in self._services:
            raise UnknownOwner(volume.name, owner)
        if volume.name in self._volumes:
            raise DuplicateVolume(volume.name)
        self._volumes[volume.name] = volume
        self._volume_owners[volume.name] = owner

    def resolve_start_order(self) -> List[str]:
        """
        Every service appears after all services it depends on. Ties between
        independent services follow declaration order.

        :raises CyclicDependency: If the graph is not acyclic.
        """
        return self._resolver.resolve_order(self._graph())

    def resolve_stop_order(self) -> List[str]:
        return self._resolver.resolve_stop_order(self._graph())

    def _graph(self) -> Dict[str, Tuple[str, ...]]:
        return {name: svc.depends_on for name, svc in self._services.items()}

    # Queries

    @property
    def services(self) -> List[Service]:
        return list(self._services.values())

    @property
    def service_names(self) -> List[str]:
        return list(self._services)

    @property
    def volumes(self) -> List[Volume]:
        return list(self._volumes.values())

    def service(self, name: str) -> Service:
        return self._services[name]

    def volume(self, name: str) -> Volume:
        return self._volumes[name]

    def dependencies_of(self, name: str) -> Tuple[str, ...]:
        return self._services[name].depends_on

    def dependents_of(self, name: str) -> List[str]:
        return [svc.name for svc in self._services.values() if name in svc.depends_on]

    def owner_of(self, volume_name: str) -> str:
        return self._volume_owners[volume_name]

    def volumes_of(self, owner: str) -> List[Volume]:
        return [self._volumes[name] for name, o in self._volume_owners.items() if o == owner]

    def __contains__(self, name: object) -> bool:
        return name in self._services

    def __len__(self) -> int:
        return len(self._services)

    def __repr__(self) -> str:
        return f"Topology(services={self.service_names}, volumes={list(self._volumes)})"
