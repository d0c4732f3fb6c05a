"""
Command Line Interface for Convoy.
"""
import functools
import logging
import sys

import click
import yaml

from .. import __version__
from ..errors import ConvoyError
from ..MANAGERS.log_aggregator import LogAggregator
from ..MANAGERS.service_orchestrator import Orchestrator
from ..MODELS.settings import RuntimeSettings
from ..PARSERS.unit_validator import load_unit


def _table(rows, headers):
    """Left-aligned columns sized to their widest cell."""
    widths = [len(h) for h in headers]
    for row in rows:
        widths = [max(w, len(str(cell))) for w, cell in zip(widths, row)]
    lines = ["  ".join(h.ljust(w) for h, w in zip(headers, widths)).rstrip()]
    for row in rows:
        lines.append("  ".join(str(cell).ljust(w) for cell, w in zip(row, widths)).rstrip())
    return "\n".join(lines)


def handle_errors(command):
    """
    Reports orchestration errors on stderr and exits with the error's code.
    """
    @functools.wraps(command)
    def wrapper(*args, **kwargs):
        try:
            return command(*args, **kwargs)
        except ConvoyError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(e.exit_code)
    return wrapper


def _orchestrator(ctx) -> Orchestrator:
    if 'orchestrator' not in ctx.obj:
        unit = load_unit(ctx.obj['file'], project_name=ctx.obj['project_name'])
        ctx.obj['unit'] = unit
        ctx.obj['orchestrator'] = Orchestrator(unit, RuntimeSettings.from_env())
    return ctx.obj['orchestrator']


@click.group()
@click.option('--file', '-f', default=None, help='Descriptor file path (default: convoy.yml, docker-compose.yml, ...)')
@click.option('--project-name', '-p', default=None, help='Unit name (default: directory name)')
@click.option('--verbose', '-v', is_flag=True, help='Debug logging')
@click.version_option(__version__, prog_name='convoy')
@click.pass_context
def cli(ctx, file, project_name, verbose):
    """
    Convoy - multi-service orchestrator.

    Builds and runs the services of a compose-style descriptor as native
    processes on a private network, in dependency order.
    """
    ctx.ensure_object(dict)
    ctx.obj['file'] = file
    ctx.obj['project_name'] = project_name
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(message)s",
        datefmt="%H:%M:%S",
        force=True,
    )


@cli.command()
@click.argument('services', nargs=-1)
@click.option('--build', is_flag=True, help='Rebuild images whose build context changed')
@click.option('--detach', '-d', is_flag=True, help='Run in background')
@click.pass_context
@handle_errors
def up(ctx, services, build, detach):
    """Start services defined in the descriptor."""
    orchestrator = _orchestrator(ctx)
    _, report = orchestrator.up(services or None, build=build)

    rows = [(o.service, o.state.value, o.detail) for o in report.outcomes.values()]
    click.echo(_table(rows, ("SERVICE", "STATE", "DETAIL")))

    if not report.ok:
        if report.cancelled:
            click.echo("Start cancelled.", err=True)
        sys.exit(report.exit_code)

    if detach:
        click.echo("Services started.")
        return

    click.echo("Attaching to logs... Press Ctrl+C to stop.")
    width = max(len(name) for name in report.outcomes)
    try:
        for name, line in orchestrator.logs(follow=True):
            click.echo(LogAggregator.format(name, line, width))
    except KeyboardInterrupt:
        pass
    click.echo("\nStopping services...")
    orchestrator.down()


@cli.command()
@click.option('--volumes', '-v', is_flag=True, help='Also remove named volumes')
@click.option('--rmi', is_flag=True, help='Also remove the images built for the services')
@click.pass_context
@handle_errors
def down(ctx, volumes, rmi):
    """Stop and remove all containers and the network."""
    removed = _orchestrator(ctx).down(remove_volumes=volumes, remove_images=rmi)
    for name in removed:
        click.echo(f"Removed {name}")
    click.echo("Services stopped.")


@cli.command()
@click.pass_context
@handle_errors
def ps(ctx):
    """List service status"""
    rows = [
        (s.service, s.state.value, s.container_id, s.pid or "", s.address, s.ports, s.detail)
        for s in _orchestrator(ctx).ps()
    ]
    click.echo(_table(rows, ("SERVICE", "STATE", "CONTAINER", "PID", "ADDRESS", "PORTS", "DETAIL")))


@cli.command()
@click.argument('service', required=False)
@click.option('--follow', '-f', is_flag=True, help='Keep streaming until the containers stop')
@click.pass_context
@handle_errors
def logs(ctx, service, follow):
    """Show container output"""
    orchestrator = _orchestrator(ctx)
    lines = orchestrator.logs([service] if service else None, follow=follow)
    width = len(service) if service else max((len(n) for n in orchestrator.unit.services), default=0)
    try:
        for name, line in lines:
            click.echo(LogAggregator.format(name, line, width))
    except KeyboardInterrupt:
        pass


@cli.command()
@click.argument('services', nargs=-1)
@click.option('--no-cache', is_flag=True, help='Rebuild even if the build context is unchanged')
@click.pass_context
@handle_errors
def build(ctx, services, no_cache):
    """Build or refresh service images."""
    report = _orchestrator(ctx).build(services or None, force=no_cache)
    rows = [(name, image.reference) for name, image in sorted(report.images.items())]
    click.echo(_table(rows, ("SERVICE", "IMAGE")))
    for name, error in sorted(report.errors.items()):
        click.echo(f"Error: {error}", err=True)
        if error.output:
            click.echo(error.output.rstrip(), err=True)
    if report.errors:
        sys.exit(next(iter(report.errors.values())).exit_code)


@cli.command()
@click.pass_context
@handle_errors
def config(ctx):
    """Validate the descriptor and print it normalized."""
    unit = load_unit(ctx.obj['file'], project_name=ctx.obj['project_name'])
    data = unit.model_dump(mode="json", exclude={"base_dir", "source_path"}, exclude_defaults=True)
    click.echo(yaml.safe_dump(data, sort_keys=False, default_flow_style=False).rstrip())


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
