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
Unit tests for the lifecycle controller.
"""
import threading
import time

import pytest

from conftest import ScriptedRuntime, make_service
from topoctl.MANAGERS.lifecycle_controller import LifecycleController
from topoctl.MANAGERS.volume_manager import LocalDirectoryBackend, VolumeBinder
from topoctl.MODELS.controller_settings import ControllerSettings, RetryPolicy
from topoctl.MODELS.runtime_state import ServiceState
from topoctl.MODELS.service_definition import Volume
from topoctl.MODELS.topology import Topology
from topoctl.RUNNERS.container_runtime import ProbeStatus
from topoctl.errors import (
    ControllerBusy,
    DependencyFailed,
    ProbeTimeout,
    StartActionFailed,
    StartCancelled,
)

READY = ProbeStatus.READY
NOT_READY = ProbeStatus.NOT_READY


def bot_and_db(*extra):
    return Topology.from_services([
        make_service("bot", depends_on=["db"], host_ports=[8000]),
        make_service("db"),
        *extra,
    ])


class CancellingBinder(VolumeBinder):
    """Cancels the controller while volumes are being attached."""

    controller = None

    def attach(self, volume, service):
        self.controller.cancel()
        return super().attach(volume, service)


class TestStartAll:
    """Tests for dependency-ordered startup."""

    def test_dependent_starts_after_dependency_is_ready(self, fast_settings):
        runtime = ScriptedRuntime(probes={"bot": [NOT_READY, READY]})
        controller = LifecycleController(bot_and_db(), runtime, fast_settings)

        report = controller.start_all()

        assert report.ok
        assert report.state_of("db") == ServiceState.READY
        assert report.state_of("bot") == ServiceState.READY
        db_ready = report.services["db"].entered(ServiceState.READY)
        bot_starting = report.services["bot"].entered(ServiceState.STARTING)
        assert db_ready.seq < bot_starting.seq
        assert db_ready.at <= bot_starting.at
        assert report.services["bot"].probe_attempts == 2
        assert runtime.calls("start") == ["db", "bot"]

    def test_probe_exhaustion_fails_service_and_blocks_dependents(self, fast_settings):
        runtime = ScriptedRuntime(probes={"db": [NOT_READY]})
        controller = LifecycleController(bot_and_db(), runtime, fast_settings)

        report = controller.start_all()

        assert not report.ok
        assert report.state_of("db") == ServiceState.FAILED
        assert isinstance(report.error_of("db"), ProbeTimeout)
        assert runtime.calls("probe").count("db") == 3
        assert report.state_of("bot") == ServiceState.PENDING
        assert isinstance(report.error_of("bot"), DependencyFailed)
        assert report.error_of("bot").dependency == "db"
        assert "bot" not in runtime.calls("start")

    def test_unrelated_branch_keeps_going(self, fast_settings):
        runtime = ScriptedRuntime(probes={"db": [NOT_READY]})
        topology = bot_and_db(make_service("cache"), make_service("metrics", depends_on=["cache"]))
        controller = LifecycleController(topology, runtime, fast_settings)

        report = controller.start_all()

        assert report.state_of("cache") == ServiceState.READY
        assert report.state_of("metrics") == ServiceState.READY
        assert sorted(report.failed) == ["bot", "db"]

    def test_dependency_failure_propagates_down_a_chain(self, fast_settings):
        runtime = ScriptedRuntime(fail_start=("a",))
        topology = Topology.from_services([
            make_service("a"),
            make_service("b", depends_on=["a"]),
            make_service("c", depends_on=["b"]),
        ])
        report = LifecycleController(topology, runtime, fast_settings).start_all()

        assert report.state_of("a") == ServiceState.FAILED
        assert isinstance(report.error_of("a"), StartActionFailed)
        for name, blocker in (("b", "a"), ("c", "b")):
            assert report.state_of(name) == ServiceState.PENDING
            assert report.error_of(name).dependency == blocker
        assert runtime.calls("start") == ["a"]

    def test_ready_services_are_not_restarted(self, fast_settings):
        runtime = ScriptedRuntime(probes={"bot": [NOT_READY]})
        controller = LifecycleController(bot_and_db(), runtime, fast_settings)
        controller.start_all()
        assert controller.status()["db"].state == ServiceState.READY

        runtime.probes["bot"] = [READY]
        report = controller.start_all()

        assert report.ok
        assert runtime.calls("start") == ["db", "bot", "bot"]

    def test_concurrent_start_is_rejected(self, fast_settings):
        runtime = ScriptedRuntime(start_delay=0.5)
        controller = LifecycleController(bot_and_db(), runtime, fast_settings)
        worker = threading.Thread(target=controller.start_all)
        worker.start()
        time.sleep(0.1)
        try:
            with pytest.raises(ControllerBusy):
                controller.start_all()
        finally:
            worker.join()

    def test_status_has_no_side_effects(self, fast_settings):
        controller = LifecycleController(bot_and_db(), ScriptedRuntime(), fast_settings)
        first = controller.status()
        second = controller.status()
        assert {n: s.state for n, s in first.items()} == {n: s.state for n, s in second.items()}
        assert all(s.state == ServiceState.PENDING for s in first.values())

    def test_status_follows_topology_order(self, fast_settings):
        topology = bot_and_db()
        controller = LifecycleController(topology, ScriptedRuntime(), fast_settings)

        report = controller.start_all()

        assert list(controller.status()) == list(topology.service_names) == ["db", "bot"]
        assert list(report.services) == ["db", "bot"]


class TestStopAll:
    """Tests for reverse-ordered shutdown."""

    def test_everything_stops_in_reverse_order(self, fast_settings):
        runtime = ScriptedRuntime()
        controller = LifecycleController(bot_and_db(), runtime, fast_settings)
        controller.start_all()

        statuses = controller.stop_all()

        assert all(s.state == ServiceState.STOPPED for s in statuses.values())
        assert runtime.calls("stop") == ["bot", "db"]

    def test_second_stop_is_a_no_op(self, fast_settings):
        runtime = ScriptedRuntime()
        controller = LifecycleController(bot_and_db(), runtime, fast_settings)
        controller.start_all()
        controller.stop_all()

        statuses = controller.stop_all()

        assert all(s.state == ServiceState.STOPPED for s in statuses.values())
        assert runtime.calls("stop") == ["bot", "db"]

    def test_failed_services_keep_their_state(self, fast_settings):
        runtime = ScriptedRuntime(probes={"db": [NOT_READY]})
        controller = LifecycleController(bot_and_db(), runtime, fast_settings)
        controller.start_all()

        statuses = controller.stop_all()

        assert statuses["db"].state == ServiceState.FAILED
        assert statuses["bot"].state == ServiceState.STOPPED
        # the failed container is still released
        assert runtime.handles["db"].stopped

    def test_hanging_stop_is_forced(self):
        settings = ControllerSettings(
            retry=RetryPolicy(max_retries=1, base_delay=0, max_delay=0),
            stop_timeout=0.1,
            kill_grace=0.1,
        )
        runtime = ScriptedRuntime(stop_hangs={"db": 2.0})
        controller = LifecycleController(bot_and_db(), runtime, settings)
        controller.start_all()

        started = time.monotonic()
        statuses = controller.stop_all()

        assert time.monotonic() - started < 1.5
        assert statuses["db"].state == ServiceState.STOPPED
        assert runtime.calls("kill") == ["db"]

    def test_failed_dependent_is_released_before_its_dependency(self, fast_settings):
        runtime = ScriptedRuntime(probes={"bot": [NOT_READY]}, stop_hangs={"bot": 0.1})
        controller = LifecycleController(bot_and_db(), runtime, fast_settings)
        report = controller.start_all()
        assert report.state_of("bot") == ServiceState.FAILED

        controller.stop_all()

        assert runtime.events.index(("stopped", "bot")) < runtime.events.index(("stop", "db"))

    def test_restart_after_stop(self, fast_settings):
        runtime = ScriptedRuntime()
        controller = LifecycleController(bot_and_db(), runtime, fast_settings)
        controller.start_all()
        controller.stop_all()

        report = controller.start_all()

        assert report.ok
        assert runtime.calls("start") == ["db", "bot", "db", "bot"]
        assert report.error_of("bot") is None


class TestCancel:
    """Tests for cancellation of an in-flight start."""

    def test_cancel_interrupts_backoff(self):
        settings = ControllerSettings(
            retry=RetryPolicy(max_retries=50, base_delay=5.0, max_delay=30.0),
            stop_timeout=0.2,
            kill_grace=0.2,
        )
        runtime = ScriptedRuntime(probes={"db": [NOT_READY]})
        controller = LifecycleController(bot_and_db(), runtime, settings)
        timer = threading.Timer(0.2, controller.cancel)
        timer.start()

        started = time.monotonic()
        report = controller.start_all()
        timer.join()

        assert time.monotonic() - started < 3.0
        assert report.state_of("db") == ServiceState.STOPPED
        assert isinstance(report.error_of("db"), StartCancelled)
        assert ServiceState.STOPPING in [t.state for t in report.services["db"].transitions]
        assert runtime.handles["db"].stopped
        assert report.state_of("bot") == ServiceState.PENDING
        assert isinstance(report.error_of("bot"), StartCancelled)

    def test_stop_all_cancels_a_running_start(self):
        settings = ControllerSettings(
            retry=RetryPolicy(max_retries=50, base_delay=5.0, max_delay=30.0),
            stop_timeout=0.2,
            kill_grace=0.2,
        )
        runtime = ScriptedRuntime(probes={"db": [NOT_READY]})
        controller = LifecycleController(bot_and_db(), runtime, settings)
        worker = threading.Thread(target=controller.start_all)
        worker.start()
        time.sleep(0.2)

        statuses = controller.stop_all()
        worker.join(timeout=3)

        assert not worker.is_alive()
        assert all(s.state == ServiceState.STOPPED for s in statuses.values())

    def test_cancel_before_start_action_skips_it(self, tmp_path, fast_settings):
        topology = Topology.from_services([make_service("db")])
        topology.add_volume(Volume(name="database-data", mount_path="/var/lib/postgresql/data"), "db")
        runtime = ScriptedRuntime()
        binder = CancellingBinder(LocalDirectoryBackend(str(tmp_path)), topology)
        controller = LifecycleController(topology, runtime, fast_settings, binder)
        binder.controller = controller

        report = controller.start_all()

        assert runtime.calls("start") == []
        assert report.state_of("db") == ServiceState.STOPPED
        assert isinstance(report.error_of("db"), StartCancelled)
        assert binder.owner_of("database-data") is None


class TestVolumes:
    """Tests for volume attachment across the lifecycle."""

    def _topology(self):
        topology = bot_and_db()
        topology.add_volume(Volume(name="database-data", mount_path="/var/lib/postgresql/data"), "db")
        return topology

    def test_volume_attached_while_running(self, tmp_path, fast_settings):
        topology = self._topology()
        binder = VolumeBinder(LocalDirectoryBackend(str(tmp_path)), topology)
        controller = LifecycleController(topology, ScriptedRuntime(), fast_settings, binder)

        controller.start_all()
        assert binder.owner_of("database-data") == "db"

        controller.stop_all()
        assert binder.owner_of("database-data") is None

    def test_data_survives_restart(self, tmp_path, fast_settings):
        topology = self._topology()
        backend = LocalDirectoryBackend(str(tmp_path))
        binder = VolumeBinder(backend, topology)
        controller = LifecycleController(topology, ScriptedRuntime(), fast_settings, binder)

        controller.start_all()
        (tmp_path / ".topoctl" / "volumes" / "database-data" / "PG_VERSION").write_text("16")
        controller.stop_all()
        controller.start_all()

        assert binder.owner_of("database-data") == "db"
        assert (tmp_path / ".topoctl" / "volumes" / "database-data" / "PG_VERSION").read_text() == "16"
        controller.stop_all()
