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
Integration tests for running services as local processes.
"""
import os
import subprocess
import sys
import time

import pytest

from topoctl.MODELS.service_definition import HealthCheck, Service, VolumeMount
from topoctl.RUNNERS.container_runtime import ProbeStatus
from topoctl.RUNNERS.process_runtime import ProcessRuntime

DUMMY = os.path.join(os.path.dirname(os.path.abspath(__file__)), "dummy_service.py")
READY_CHECK = ["CMD", sys.executable, "-c",
               "import os, sys; sys.exit(0 if os.path.exists('ready') else 1)"]


def wait_for(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.1)
    return False


class TestProcessRuntime:
    """Tests for ProcessRuntime."""

    def test_start_probe_stop(self, tmp_path):
        runtime = ProcessRuntime(base_dir=str(tmp_path))
        service = Service(
            name="db",
            command=[sys.executable, DUMMY, "0.5"],
            environment={"APP_ENV": "prod"},
            healthcheck=HealthCheck(test=READY_CHECK, timeout=5),
        )
        handle = runtime.start(service)
        try:
            assert wait_for(lambda: runtime.probe(handle).ready)
        finally:
            runtime.stop(handle, timeout=5)
        assert handle.exit_code() is not None

        log = tmp_path / ".topoctl" / "logs" / "db.log"
        assert "APP_ENV=prod" in log.read_text()

    def test_no_healthcheck_means_alive_is_ready(self, tmp_path):
        runtime = ProcessRuntime(base_dir=str(tmp_path))
        handle = runtime.start(Service(name="bot", command=[sys.executable, DUMMY]))
        try:
            assert runtime.probe(handle).ready
        finally:
            runtime.stop(handle, timeout=5)

    def test_exited_process_is_errored(self, tmp_path):
        runtime = ProcessRuntime(base_dir=str(tmp_path))
        handle = runtime.start(Service(name="once", command=[sys.executable, "-c", "pass"]))
        handle.process.wait(timeout=10)
        result = runtime.probe(handle)
        assert result.status == ProbeStatus.ERRORED
        assert result.output == "exited(0)"
        runtime.stop(handle, timeout=1)

    def test_stop_timeout_then_kill(self, tmp_path):
        runtime = ProcessRuntime(base_dir=str(tmp_path))
        stubborn = ("import signal, time\n"
                    "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
                    "open('ready', 'w').close()\n"
                    "time.sleep(60)\n")
        handle = runtime.start(Service(name="stubborn", command=[sys.executable, "-c", stubborn],
                                       healthcheck=HealthCheck(test=READY_CHECK)))
        assert wait_for(lambda: runtime.probe(handle).ready)
        with pytest.raises(subprocess.TimeoutExpired):
            runtime.stop(handle, timeout=0.5)
        runtime.kill(handle)
        assert wait_for(lambda: handle.exit_code() is not None)

    def test_missing_command(self, tmp_path):
        runtime = ProcessRuntime(base_dir=str(tmp_path))
        with pytest.raises(ValueError):
            runtime.start(Service(name="empty", image="postgres"))

    def test_named_volume_is_linked(self, tmp_path):
        storage = tmp_path / "storage" / "data"
        storage.mkdir(parents=True)
        runtime = ProcessRuntime(base_dir=str(tmp_path), volume_path=lambda name: str(storage))
        service = Service(
            name="db",
            command=[sys.executable, DUMMY],
            volumes=[VolumeMount(source="data", target="/var/lib/data")],
        )
        handle = runtime.start(service)
        try:
            link = tmp_path / ".topoctl" / "run" / "db" / "var" / "lib" / "data"
            assert link.is_symlink()
            assert os.path.realpath(str(link)) == os.path.realpath(str(storage))
        finally:
            runtime.stop(handle, timeout=5)
