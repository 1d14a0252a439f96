# cli.py
from __future__ import annotations

import sys
from pathlib import Path

import click

from .config import DEFAULT_CONFIG_FILE
from .errors import ConfigError, CycleError
from .log import set_level
from .project import Project
from .ui.console import Console, get_console, set_console

EXIT_FAILED = 1
EXIT_CONFIG = 2


def discover_config(config_arg: str | None) -> Path:
    """
    Find the config file from the --config argument or the default name.

    Raises:
        SystemExit: if no config file can be found
    """
    console = get_console()
    path = Path(config_arg or DEFAULT_CONFIG_FILE)
    if not path.exists() and path.suffix != ".py":
        path = Path(str(path) + ".py")
    if not path.exists():
        console.print_error(
            "Config file not found",
            f"Could not find config file: {path}",
            suggestion=(
                f"Create {DEFAULT_CONFIG_FILE}, for example:\n"
                "  from assetflow.presets import wordpress_theme\n"
                "  CONFIG = wordpress_theme('project')\n\n"
                "Or specify one explicitly:\n  assetflow --config my_config.py build"
            ),
        )
        sys.exit(EXIT_CONFIG)
    return path


def _load_project(ctx) -> Project:
    console = get_console()
    path = discover_config(ctx.obj.get("config"))
    overrides = {}
    if ctx.obj.get("workers"):
        overrides["workers"] = ctx.obj["workers"]
    try:
        project = Project.load(path, **overrides)
    except (ConfigError, CycleError) as e:
        console.print_error("Invalid configuration", str(e))
        sys.exit(EXIT_CONFIG)
    console.print_debug(f"Config: {path.resolve()}")
    console.print_debug(f"Root: {project.root}  dest_root: {project.config.dest_root}")
    console.print_debug(f"Workers: {project.executor.max_workers}  hash_mode: {project.config.hash_mode}")
    console.print_debug(f"Task order: {' -> '.join(project.graph.order)}")
    return project


@click.group()
@click.option("--config", "config_path", default=None, help=f"Config file (defaults to {DEFAULT_CONFIG_FILE})")
@click.option("--workers", default=None, type=int, help="Number of parallel workers")
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, config_path, workers, debug):
    """assetflow: incremental front-end asset pipeline."""
    set_console(Console(debug=debug))
    if debug:
        set_level("DEBUG")
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["config"] = config_path
    ctx.obj["workers"] = workers


@cli.command()
@click.option("--clean/--no-clean", default=False, help="Remove the destination root first")
@click.option("--force", is_flag=True, default=False, help="Rebuild every group, ignoring fingerprints")
@click.pass_context
def build(ctx, clean, force):
    """Full build (parallel, incremental unless --clean/--force)."""
    console = get_console()
    project = _load_project(ctx)
    console.print_build_started(
        project=project.root.name,
        groups=project.config.group_names,
        workers=project.executor.max_workers,
    )
    try:
        report = project.build(clean=clean, force=force)
    except (ConfigError, CycleError) as e:
        console.print_error("Invalid configuration", str(e))
        sys.exit(EXIT_CONFIG)
    console.print_report(report)
    if not report.ok:
        sys.exit(EXIT_FAILED)


@cli.command("run")
@click.argument("groups", nargs=-1, required=True)
@click.pass_context
def run_groups(ctx, groups):
    """Build only the named groups (e.g. `assetflow run styles scripts`)."""
    console = get_console()
    project = _load_project(ctx)
    try:
        report = project.build_group(*groups)
    except ConfigError as e:
        console.print_error("Unknown group", str(e))
        sys.exit(EXIT_CONFIG)
    console.print_report(report)
    if not report.ok:
        sys.exit(EXIT_FAILED)


@cli.command()
@click.option("--serve/--no-serve", default=True, help="Serve the theme with live reload")
@click.option("--port", default=None, type=int, help="Dev server port")
@click.option("--initial-build/--no-initial-build", default=True, help="Build once before watching")
@click.pass_context
def watch(ctx, serve, port, initial_build):
    """Watch sources, rebuild incrementally, reload the browser."""
    console = get_console()
    project = _load_project(ctx)
    console.print_info("Watching for changes (Ctrl+C to stop)")
    try:
        project.watch(serve=serve, initial_build=initial_build, port=port)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:  # noqa: BLE001
        console.print_exception(e)
        sys.exit(EXIT_FAILED)


@cli.command()
@click.pass_context
def groups(ctx):
    """List configured asset groups."""
    project = _load_project(ctx)
    get_console().print_groups(
        [(g.name, g.sources, g.dest, g.transforms) for g in project.config.groups]
    )


@cli.command()
@click.pass_context
def clean(ctx):
    """Remove the destination root."""
    import shutil

    console = get_console()
    project = _load_project(ctx)
    target = project.root / project.config.dest_root
    if target.exists():
        shutil.rmtree(target)
        console.print_info(f"Removed {target}")
    else:
        console.print_info(f"Nothing to clean at {target}")


def main():  # pragma: no cover
    cli()


if __name__ == "__main__":  # pragma: no cover
    main()
