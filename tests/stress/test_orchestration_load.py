import time

from conftest import ScriptedRuntime, make_service
from topoctl.MANAGERS.lifecycle_controller import LifecycleController
from topoctl.MODELS.runtime_state import ServiceState
from topoctl.MODELS.topology import Topology
from topoctl.PARSERS.compose_parser import ComposeParser


def test_stress_orchestration(fast_settings):
    """
    Starts 50 services arranged as five independent chains of ten.
    """
    services = []
    for chain in range(5):
        for i in range(10):
            deps = [f"c{chain}_{i - 1}"] if i else []
            services.append(make_service(f"c{chain}_{i}", depends_on=deps))
    topology = Topology.from_services(services)
    runtime = ScriptedRuntime(start_delay=0.01)
    controller = LifecycleController(topology, runtime, fast_settings)

    start_time = time.time()
    report = controller.start_all()
    end_time = time.time()
    print(f"Started 50 services in {end_time - start_time:.2f}s")

    assert report.ok
    starts = runtime.calls("start")
    for chain in range(5):
        positions = [starts.index(f"c{chain}_{i}") for i in range(10)]
        assert positions == sorted(positions)

    statuses = controller.stop_all()
    assert all(s.state == ServiceState.STOPPED for s in statuses.values())


def test_large_config_parsing():
    parser = ComposeParser(context={})

    # Generate a large compose file
    content = "services:\n"
    for i in range(1000):
        content += f"  service_{i}:\n"
        content += f"    image: image_{i}\n"
        if i:
            content += f"    depends_on: [service_{i - 1}]\n"
        content += f"    environment:\n"
        content += f"      - VAR_{i}=VALUE_{i}\n"

    start_time = time.time()
    topology = parser.parse_from_string(content).to_topology()
    order = topology.resolve_start_order()
    end_time = time.time()

    assert order[0] == "service_0"
    assert order[-1] == "service_999"
    assert end_time - start_time < 5.0
