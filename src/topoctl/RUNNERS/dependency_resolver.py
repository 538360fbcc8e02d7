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
Dependency resolution for services to determine startup and shutdown order.
"""
import heapq
from typing import Dict, Iterable, List, Mapping, Optional

from ..errors import CyclicDependency


class DependencyResolver:
    """
    Resolves the startup and shutdown order of services based on their dependencies.
    Independent services keep the order in which they were declared.
    """

    def resolve_order(self, dependencies: Mapping[str, Iterable[str]]) -> List[str]:
        """
        Determines the order to start services using a topological sort.

        :param dependencies: Service names, in declaration order, mapped to the
            names they depend on. Names outside the mapping are ignored.
        :return: Service names in the order they should be started.
        :raises CyclicDependency: If the graph contains a cycle.
        """
        index = {name: i for i, name in enumerate(dependencies)}
        remaining: Dict[str, int] = {}
        dependents: Dict[str, List[str]] = {name: [] for name in dependencies}

        for name, deps in dependencies.items():
            known = {dep for dep in deps if dep in index}
            remaining[name] = len(known)
            for dep in known:
                dependents[dep].append(name)

        ready = [index[name] for name, count in remaining.items() if count == 0]
        heapq.heapify(ready)
        names = list(dependencies)
        ordered = []

        while ready:
            name = names[heapq.heappop(ready)]
            ordered.append(name)
            for dependent in dependents[name]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, index[dependent])

        if len(ordered) != len(names):
            raise CyclicDependency(self.find_cycle(dependencies) or sorted(set(names) - set(ordered)))
        return ordered

    def resolve_stop_order(self, dependencies: Mapping[str, Iterable[str]]) -> List[str]:
        """
        Dependents are stopped before the services they depend on.
        """
        return list(reversed(self.resolve_order(dependencies)))

    def find_cycle(self, dependencies: Mapping[str, Iterable[str]]) -> Optional[List[str]]:
        """
        Returns one dependency cycle as a closed path (first name repeated at
        the end), or None if the graph is acyclic.
        """
        done = set()
        for root in dependencies:
            if root in done:
                continue
            # Iterative depth-first walk; the path holds the chain currently being explored.
            path: List[str] = [root]
            on_path = {root}
            pending = [iter(dependencies[root])]
            while pending:
                dep = next(pending[-1], None)
                if dep is None:
                    pending.pop()
                    done.add(path[-1])
                    on_path.discard(path.pop())
                    continue
                if dep not in dependencies or dep in done:
                    continue
                if dep in on_path:
                    return path[path.index(dep):] + [dep]
                path.append(dep)
                on_path.add(dep)
                pending.append(iter(dependencies[dep]))
        return None
