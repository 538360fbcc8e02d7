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
Volume binding: tracks which service a named volume is attached to, and
keeps the volume's data in a storage backend that outlives service restarts.
"""
import logging
import os
import shutil
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Union

from ..MODELS.service_definition import Volume
from ..MODELS.topology import Topology
from ..errors import UnknownVolume, VolumeAlreadyBound, VolumeInUse

logger = logging.getLogger(__name__)

VolumeRef = Union[Volume, str]


def _name(volume: VolumeRef) -> str:
    return volume.name if isinstance(volume, Volume) else volume


class StorageBackend(ABC):
    """
    Where volume data lives. Binding only tracks attachment; the data format
    is the business of whatever service writes to the volume.
    """

    @abstractmethod
    def provision(self, name: str) -> str:
        """Ensures storage for ``name`` exists and returns its location. Idempotent."""

    @abstractmethod
    def exists(self, name: str) -> bool:
        ...

    @abstractmethod
    def remove(self, name: str) -> bool:
        """Deletes the stored data. Returns False if there was nothing to delete."""

    @abstractmethod
    def list(self) -> List[str]:
        ...


class LocalDirectoryBackend(StorageBackend):
    """
    Keeps each named volume in its own directory under ``volumes_root``.
    """

    def __init__(self, base_dir: str = ".", volumes_root: str = ".topoctl/volumes"):
        """
        :param base_dir: The base directory for resolving relative paths.
        :param volumes_root: The root directory for volume storage.
        """
        self.base_dir = os.path.abspath(base_dir)
        self.volumes_root = os.path.abspath(os.path.join(self.base_dir, volumes_root))

    def path(self, name: str) -> str:
        if not name or os.sep in name or name in (".", ".."):
            raise ValueError(f"Invalid volume name: {name!r}")
        return os.path.join(self.volumes_root, name)

    def provision(self, name: str) -> str:
        path = self.path(name)
        os.makedirs(path, exist_ok=True)
        return path

    def exists(self, name: str) -> bool:
        return os.path.isdir(self.path(name))

    def remove(self, name: str) -> bool:
        path = self.path(name)
        if not os.path.isdir(path):
            return False
        shutil.rmtree(path)
        return True

    def list(self) -> List[str]:
        if not os.path.isdir(self.volumes_root):
            return []
        return sorted(
            entry for entry in os.listdir(self.volumes_root)
            if os.path.isdir(os.path.join(self.volumes_root, entry))
        )

    def size(self, name: str) -> int:
        """Total size in bytes of the files stored in a volume."""
        total = 0
        for root, _dirs, files in os.walk(self.path(name)):
            for filename in files:
                fp = os.path.join(root, filename)
                if not os.path.islink(fp):
                    total += os.path.getsize(fp)
        return total


class VolumeBinder:
    """
    Associates volumes with at most one owning service at a time.

    Attach and detach never touch the stored data; only ``destroy`` does,
    and only for volumes that are not attached.
    """

    def __init__(self, backend: StorageBackend, topology: Optional[Topology] = None):
        """
        :param backend: Storage for volume data.
        :param topology: When given, only volumes declared in it can be bound.
        """
        self.backend = backend
        self.topology = topology
        self._bindings: Dict[str, str] = {}
        self._lock = threading.Lock()

    def attach(self, volume: VolumeRef, service: str) -> str:
        """
        Binds a volume to a service and provisions its storage.
        Attaching a volume to the service that already holds it is a no-op.

        :return: The storage location of the volume.
        :raises VolumeAlreadyBound: If another service holds the volume.
        """
        name = self._check_known(volume)
        with self._lock:
            owner = self._bindings.get(name)
            if owner is not None and owner != service:
                raise VolumeAlreadyBound(name, owner, service)
            location = self.backend.provision(name)
            if owner is None:
                self._bindings[name] = service
                logger.info("Attached volume %s to %s", name, service)
            return location

    def detach(self, volume: VolumeRef) -> bool:
        """
        Marks a volume unbound. Its data is kept.

        :return: False if the volume was not attached.
        """
        name = _name(volume)
        with self._lock:
            owner = self._bindings.pop(name, None)
        if owner is None:
            return False
        logger.info("Detached volume %s from %s", name, owner)
        return True

    def destroy(self, volume: VolumeRef) -> bool:
        """
        Irreversibly deletes a volume's data.

        :return: False if no data existed.
        :raises VolumeInUse: If the volume is attached.
        """
        name = self._check_known(volume)
        with self._lock:
            owner = self._bindings.get(name)
            if owner is not None:
                raise VolumeInUse(name, owner)
            removed = self.backend.remove(name)
        if removed:
            logger.info("Destroyed volume %s", name)
        return removed

    def owner_of(self, volume: VolumeRef) -> Optional[str]:
        with self._lock:
            return self._bindings.get(_name(volume))

    def bindings(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._bindings)

    def _check_known(self, volume: VolumeRef) -> str:
        name = _name(volume)
        if self.topology is not None and name not in {v.name for v in self.topology.volumes}:
            raise UnknownVolume(name)
        return name
