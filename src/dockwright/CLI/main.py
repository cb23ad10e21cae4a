"""
Command Line Interface for dockwright.
"""
import logging
import os
import time

import click

from ..ACCESS.docker_access import DockerAccess
from ..ACCESS.docker_sdk_access import DockerSdkAccess
from ..MANAGERS.service_orchestrator import ServiceOrchestrator
from ..MANAGERS.watch_service import WatchService
from ..MODELS.image_config import WatchMode
from ..MODELS.run_label import RunLabel
from ..PARSERS.config_parser import DEFAULT_CONFIG_FILE, ConfigParser
from ..RUNNERS.dependency_resolver import DependencyResolver
from ..exceptions import DockwrightError


@click.group()
@click.option('--file', '-f', default=DEFAULT_CONFIG_FILE, envvar='DOCKWRIGHT_CONFIG',
              help='Config file path')
@click.option('--docker-host', envvar='DOCKER_HOST', default=None,
              help='Docker daemon URL')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug output')
@click.pass_context
def cli(ctx, file, docker_host, verbose):
    """
    dockwright - Start, wait for and stop the containers of a build.

    Images are started in dependency order, waited for until they are ready
    and stopped again in reverse order.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj['file'] = file
    ctx.obj['docker_host'] = docker_host


def _fail(ctx, message):
    click.echo(f"Error: {message}", err=True)
    ctx.exit(1)


def _load_config(ctx):
    file = ctx.obj['file']
    if not os.path.exists(file):
        _fail(ctx, f"{file} not found.")
    if 'config' not in ctx.obj:
        ctx.obj['config'] = ConfigParser().parse(file)
    return ctx.obj['config']


def _access(ctx) -> DockerAccess:
    # Tests hand in their own engine access through ctx.obj
    if ctx.obj.get('access') is None:
        ctx.obj['access'] = DockerSdkAccess(base_url=ctx.obj['docker_host'])
    return ctx.obj['access']


def _orchestrator(ctx, run_id=None) -> ServiceOrchestrator:
    config = _load_config(ctx)
    run_label = None
    if run_id:
        project = config.project
        run_label = RunLabel.create(project.group, project.artifact, project.version, run_id)
    return ServiceOrchestrator(config, _access(ctx), run_label=run_label)


def _print_containers(containers):
    click.echo(f"{'IMAGE':25} {'CONTAINER':12}")
    click.echo("-" * 38)
    for name, container_id in containers.items():
        click.echo(f"{name:25} {container_id[:12]:12}")


@cli.command()
@click.pass_context
def order(ctx):
    """Show the order images are started in."""
    try:
        config = _load_config(ctx)
        images = [image for image in config.images if not image.run.skip]
        configured = {image.name for image in images} | {image.alias for image in images if image.alias}

        # The engine is only asked for dependencies on external containers
        def container_exists(name):
            return name not in configured and _access(ctx).has_container(name)

        for name in DependencyResolver(container_exists=container_exists).resolve_names(images):
            click.echo(name)
    except DockwrightError as e:
        _fail(ctx, e)


@cli.command()
@click.option('--follow', is_flag=True, help='Keep running and stop the containers on Ctrl+C')
@click.option('--run-id', default=None, help='Run id to label the containers with')
@click.option('--pull-retries', default=0, type=int, help='Retries for pulling missing images')
@click.pass_context
def start(ctx, follow, run_id, pull_retries):
    """Start all configured images."""
    try:
        orchestrator = _orchestrator(ctx, run_id)
        orchestrator.pull_retries = pull_retries
        containers = orchestrator.start(shutdown_hook=follow)
    except DockwrightError as e:
        _fail(ctx, e)
        return

    _print_containers(containers)
    click.echo(f"Run label: {orchestrator.run_label}")
    if not follow:
        return

    click.echo("Running... Press Ctrl+C to stop.")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        click.echo("\nStopping containers...")
        orchestrator.stop()


@cli.command()
@click.option('--keep', is_flag=True, help='Stop the containers but do not remove them')
@click.option('--remove-volumes', is_flag=True, help='Remove the volumes of removed containers')
@click.option('--run-id', default=None, help='Only stop the containers of this run')
@click.pass_context
def stop(ctx, keep, remove_volumes, run_id):
    """Stop containers started by dockwright for this project."""
    try:
        orchestrator = _orchestrator(ctx, run_id)
        stopped = orchestrator.stop(keep_container=keep, remove_volumes=remove_volumes,
                                    all_runs=run_id is None)
    except DockwrightError as e:
        _fail(ctx, e)
        return
    click.echo(f"Stopped {len(stopped)} container(s).")


@cli.command()
@click.option('--interval', type=int, default=None, help='Milliseconds between two checks')
@click.option('--mode', type=click.Choice([m.value for m in WatchMode]), default=None,
              help='What to do on changes')
@click.option('--keep-running', is_flag=True, help='Do not stop the containers afterwards')
@click.pass_context
def watch(ctx, interval, mode, keep_running):
    """Start all images and restart them when their image changes."""
    try:
        orchestrator = _orchestrator(ctx)
        options = orchestrator.config.watch
        overrides = {}
        if interval is not None:
            overrides['interval'] = interval
        if mode is not None:
            overrides['mode'] = WatchMode(mode)
        if keep_running:
            overrides['keep_running'] = True
        options = options.model_copy(update=overrides)

        orchestrator.start(shutdown_hook=not options.keep_running)
        watcher = WatchService(orchestrator.access, orchestrator.run_service, orchestrator.properties,
                               orchestrator.run_label, options)
        watcher.watch(orchestrator.images)
        if not options.keep_running:
            orchestrator.stop()
    except DockwrightError as e:
        _fail(ctx, e)


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
