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
A container runtime that runs each service's command as a native process,
with log redirection, health check commands and process-tree termination.
"""
import logging
import os
import subprocess
import time
from dataclasses import dataclass
from typing import IO, Callable, List, Optional, Union

import psutil

from .container_runtime import ContainerRuntime, ProbeResult
from ..MODELS.service_definition import Service

logger = logging.getLogger(__name__)


@dataclass
class ProcessHandle:
    """A running service process."""

    service: Service
    process: subprocess.Popen
    log_handle: Optional[IO[str]] = None
    started_at: float = 0.0

    @property
    def pid(self) -> int:
        return self.process.pid

    def exit_code(self) -> Optional[int]:
        return self.process.poll()


class ProcessRuntime(ContainerRuntime):
    """
    Runs services as child processes of the controller.

    The image reference is informational only; the service's ``command`` is
    executed directly. Named volumes are linked into the service's working
    directory at their mount path when a ``volume_path`` resolver is given.
    """

    def __init__(self,
                 base_dir: str = ".",
                 log_dir: Optional[str] = None,
                 volume_path: Optional[Callable[[str], str]] = None):
        """
        :param base_dir: Directory that relative working dirs and mount targets resolve against.
        :param log_dir: Where ``<service>.log`` files are written; defaults to ``.topoctl/logs``.
        :param volume_path: Maps a named volume to its storage directory.
        """
        self.base_dir = os.path.abspath(base_dir)
        self.log_dir = log_dir or os.path.join(self.base_dir, ".topoctl", "logs")
        self.volume_path = volume_path

    def start(self, service: Service) -> ProcessHandle:
        if not service.command:
            raise ValueError(f"Service {service.name} has no command to run")

        working_dir = self._working_dir(service)
        os.makedirs(working_dir, exist_ok=True)
        self._link_volumes(service, working_dir)

        env = os.environ.copy()
        env.update(service.environment)

        os.makedirs(self.log_dir, exist_ok=True)
        log_handle = open(os.path.join(self.log_dir, f"{service.name}.log"), "a")

        logger.info("[%s] Starting command: %s", service.name, " ".join(service.command))
        try:
            process = subprocess.Popen(
                service.command,
                env=env,
                cwd=working_dir,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                text=True,
                shell=False,
            )
        except OSError:
            log_handle.close()
            raise
        return ProcessHandle(service, process, log_handle, time.monotonic())

    def probe(self, handle: ProcessHandle) -> ProbeResult:
        exit_code = handle.exit_code()
        if exit_code is not None:
            return ProbeResult.errored(f"exited({exit_code})")

        hc = handle.service.healthcheck
        if hc is None or not hc.test:
            return ProbeResult.ok()

        command, use_shell = self._health_command(hc.test)
        if command is None:
            return ProbeResult.ok()

        env = os.environ.copy()
        env.update(handle.service.environment)
        try:
            result = subprocess.run(
                command,
                shell=use_shell,
                env=env,
                cwd=self._working_dir(handle.service),
                capture_output=True,
                timeout=hc.timeout,
                text=True,
            )
        except subprocess.TimeoutExpired:
            return ProbeResult.not_ready("Health check timed out")
        except OSError as e:
            return ProbeResult.errored(str(e))

        if result.returncode == 0:
            return ProbeResult.ok(result.stdout[:500] if result.stdout else "")
        return ProbeResult.not_ready(
            result.stderr[:500] if result.stderr else f"Exit code: {result.returncode}"
        )

    def stop(self, handle: ProcessHandle, timeout: float) -> None:
        """
        Sends SIGTERM to the process and its children and waits for them.

        :raises subprocess.TimeoutExpired: If the process outlives ``timeout``.
        """
        try:
            if handle.exit_code() is None:
                logger.info("[%s] Stopping process %d", handle.service.name, handle.pid)
                for child in self._children(handle):
                    child.terminate()
                handle.process.terminate()
                handle.process.wait(timeout=timeout)
        finally:
            if handle.exit_code() is not None:
                self._close_log(handle)

    def kill(self, handle: ProcessHandle) -> None:
        logger.warning("[%s] Process did not terminate, killing", handle.service.name)
        for child in self._children(handle):
            try:
                child.kill()
            except psutil.NoSuchProcess:
                pass
        if handle.exit_code() is None:
            handle.process.kill()
        self._close_log(handle)

    def _children(self, handle: ProcessHandle) -> List[psutil.Process]:
        try:
            return psutil.Process(handle.pid).children(recursive=True)
        except psutil.NoSuchProcess:
            return []

    def _close_log(self, handle: ProcessHandle) -> None:
        if handle.log_handle and not handle.log_handle.closed:
            handle.log_handle.close()

    def _working_dir(self, service: Service) -> str:
        if service.working_dir:
            return os.path.join(self.base_dir, service.working_dir.lstrip("/\\"))
        return os.path.join(self.base_dir, ".topoctl", "run", service.name)

    def _link_volumes(self, service: Service, working_dir: str) -> None:
        """
        Symlinks each named volume's storage directory to its mount path,
        resolved inside the service's working directory.
        """
        if self.volume_path is None:
            return
        for mount in service.volumes:
            if not mount.is_named:
                continue
            source = self.volume_path(mount.source)
            target = os.path.join(working_dir, mount.target.strip("/\\"))
            if os.path.islink(target):
                if os.path.realpath(target) == os.path.realpath(source):
                    continue
                os.unlink(target)
            elif os.path.exists(target):
                logger.warning("[%s] Mount target %s exists, leaving it alone", service.name, target)
                continue
            parent = os.path.dirname(target)
            if parent:
                os.makedirs(parent, exist_ok=True)
            os.symlink(source, target, target_is_directory=True)
            logger.debug("[%s] Linked volume %s -> %s", service.name, source, target)

    @staticmethod
    def _health_command(test: List[str]):
        """
        Splits a Docker-style test into (command, use_shell).
        ``NONE`` disables the check and yields (None, False).
        """
        kind = test[0]
        if kind == "NONE":
            return None, False
        if kind == "CMD":
            return test[1:], False
        if kind == "CMD-SHELL":
            command: Union[List[str], str] = " ".join(test[1:])
            return command, True
        return test, False
