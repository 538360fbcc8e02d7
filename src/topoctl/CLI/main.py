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
Command Line Interface for topoctl.
"""
import logging
import os
import signal
import sys
import threading

import click

from ..MANAGERS.lifecycle_controller import LifecycleController
from ..MANAGERS.volume_manager import LocalDirectoryBackend, VolumeBinder
from ..MODELS.runtime_state import ServiceState
from ..PARSERS.compose_parser import ComposeParser
from ..RUNNERS.process_runtime import ProcessRuntime
from ..UTILS.durations import parse_duration
from ..errors import TopoctlError


class Duration(click.ParamType):
    name = "duration"

    def convert(self, value, param, ctx):
        try:
            return parse_duration(value)
        except ValueError as e:
            self.fail(str(e), param, ctx)


DURATION = Duration()


@click.group()
@click.option('--file', '-f', default='docker-compose.yml', help='Compose file path')
@click.option('--verbose', '-v', is_flag=True, help='Debug logging')
@click.pass_context
def cli(ctx, file, verbose):
    """
    topoctl - bring up a service topology in dependency order.

    Services start once everything they depend on is ready, and named
    volumes keep their data between runs.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj['file'] = file
    ctx.obj['base_dir'] = os.path.dirname(os.path.abspath(file))


def _load(ctx):
    """Parses the compose file and builds the topology, exiting on errors."""
    path = ctx.obj['file']
    if not os.path.exists(path):
        raise click.ClickException(f"{path} not found.")
    try:
        config = ComposeParser().parse(path)
        topology = config.to_topology()
    except TopoctlError as e:
        raise click.ClickException(str(e))
    return config, topology


@cli.command()
@click.pass_context
def config(ctx):
    """Validate the compose file and print the start order."""
    cfg, topology = _load(ctx)
    click.echo(f"Project: {cfg.name}")
    click.echo(f"{'SERVICE':15} {'DEPENDS ON':20} {'PORTS':20} VOLUMES")
    click.echo("-" * 70)
    for name in topology.resolve_start_order():
        svc = topology.service(name)
        ports = ", ".join(str(p) for p in svc.ports) or "-"
        deps = ", ".join(svc.depends_on) or "-"
        vols = ", ".join(f"{v.name}:{v.mount_path}" for v in topology.volumes_of(name)) or "-"
        click.echo(f"{name:15} {deps:20} {ports:20} {vols}")


@cli.command()
@click.option('--max-retries', type=click.IntRange(min=1), help='Readiness probes per service')
@click.option('--base-delay', type=DURATION, help='First backoff delay, e.g. 500ms')
@click.option('--max-delay', type=DURATION, help='Backoff cap, e.g. 10s')
@click.option('--stop-timeout', type=DURATION, help='Graceful stop timeout per service')
@click.option('--once', is_flag=True, help='Stop again as soon as startup finishes')
@click.pass_context
def up(ctx, max_retries, base_delay, max_delay, stop_timeout, once):
    """Start services defined in the compose file."""
    cfg, topology = _load(ctx)
    settings = cfg.settings.with_overrides(
        max_retries=max_retries,
        base_delay=base_delay,
        max_delay=max_delay,
        stop_timeout=stop_timeout,
    )
    base_dir = ctx.obj['base_dir']
    backend = LocalDirectoryBackend(base_dir)
    runtime = ProcessRuntime(base_dir, volume_path=backend.path)
    controller = LifecycleController(topology, runtime, settings, VolumeBinder(backend, topology))

    stop_requested = threading.Event()

    def request_stop(signum, frame):
        if not stop_requested.is_set():
            click.echo("\nStopping services...")
        stop_requested.set()
        controller.cancel()

    previous = {sig: signal.signal(sig, request_stop) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        report = controller.start_all()
        _print_status(report.services)
        if not report.ok:
            click.echo(f"Not ready: {', '.join(report.failed)}", err=True)
        elif not once:
            click.echo("Running... Press Ctrl+C to stop.")
            stop_requested.wait()
    finally:
        controller.stop_all()
        for sig, handler in previous.items():
            if handler is not None:
                signal.signal(sig, handler)
        click.echo("Services stopped.")
    if not report.ok:
        sys.exit(1)


@cli.command()
@click.pass_context
def volumes(ctx):
    """List stored volumes."""
    backend = LocalDirectoryBackend(ctx.obj['base_dir'])
    names = backend.list()
    if not names:
        click.echo("No volumes.")
        return
    click.echo(f"{'VOLUME':25} {'SIZE':>12}")
    click.echo("-" * 38)
    for name in names:
        click.echo(f"{name:25} {backend.size(name):>12}")


@cli.command('volume-rm')
@click.argument('names', nargs=-1, required=True)
@click.option('--yes', '-y', is_flag=True, help='Do not ask for confirmation')
@click.pass_context
def volume_rm(ctx, names, yes):
    """Irreversibly delete the data of named volumes."""
    _cfg, topology = _load(ctx)
    binder = VolumeBinder(LocalDirectoryBackend(ctx.obj['base_dir']), topology)
    if not yes:
        click.confirm(f"Delete all data in {', '.join(names)}?", abort=True)
    for name in names:
        try:
            removed = binder.destroy(name)
        except TopoctlError as e:
            raise click.ClickException(str(e))
        click.echo(f"{name}: {'removed' if removed else 'no data'}")


def _print_status(statuses):
    click.echo(f"{'SERVICE':15} {'STATE':10} {'PROBES':>6}  ERROR")
    click.echo("-" * 60)
    for name, status in statuses.items():
        error = status.error_message if status.state != ServiceState.READY else ""
        click.echo(f"{name:15} {status.state.value:10} {status.probe_attempts:>6}  {error}")


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
