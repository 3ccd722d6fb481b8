"""Thin CLI wrapper for stackbuild.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from stackbuild import __version__
from stackbuild.config import get_settings, print_settings_json

app = typer.Typer(
    name="stackbuild",
    help="stackbuild - build the images declared in a manifest, skipping unchanged ones",
    no_args_is_help=True,
)
console = Console()

DEFAULT_MANIFEST = Path("stackbuild.yml")


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"stackbuild version {__version__}")
        raise typer.Exit()


def print_json(text: str) -> None:
    """Print JSON without rich wrapping or markup."""
    console.print(text, soft_wrap=True, markup=False, highlight=False)


def configure_logging(level: str) -> None:
    """Configure the root logger from the settings level."""
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """stackbuild - build the images declared in a manifest."""


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        print_json(print_settings_json(settings))
        return

    token_display = "(set)" if settings.registry_token else "(anonymous)"
    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Registry:[/bold]")
    console.print(f"  Registry URL:        {settings.registry_url}")
    console.print(f"  Namespace:           {settings.namespace}")
    console.print(f"  Global namespace:    {settings.global_namespace}")
    console.print(f"  Token:               {token_display}")
    console.print(f"  Insecure:            {settings.registry_insecure}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Managed context:     {settings.managed}")
    console.print(f"  Smart builds:        {settings.smart_builds_enabled}")
    console.print(f"  Env prefix:          {settings.env_prefix}")
    console.print(f"  Log level:           {settings.log_level}")
    console.print(f"  Logs directory:      {settings.logs_dir}")
    console.print()
    console.print("[bold]Concurrency:[/bold]")
    console.print(f"  Max builds:          {settings.max_concurrent_builds}")
    console.print()
    console.print("[bold]Timeouts (seconds):[/bold]")
    console.print(f"  Build timeout:       {settings.build_timeout}")
    console.print(f"  Registry timeout:    {settings.registry_timeout}")


def _parse_secrets(secrets: list[str] | None) -> dict[str, str]:
    """Parse repeated '--secret id=path' options."""
    result: dict[str, str] = {}
    for item in secrets or []:
        secret_id, sep, path = item.partition("=")
        if not sep or not secret_id or not path:
            console.print(f"[red]Invalid secret '{item}', expected id=path[/red]")
            raise typer.Exit(code=1)
        result[secret_id] = path
    return result


@app.command()
def build(
    units: Annotated[
        list[str] | None,
        typer.Argument(help="Units to build (default: every unit)"),
    ] = None,
    file: Annotated[
        Path,
        typer.Option("--file", "-f", help="Path to the manifest file"),
    ] = DEFAULT_MANIFEST,
    no_cache: Annotated[
        bool,
        typer.Option("--no-cache", help="Do not reuse images already built"),
    ] = False,
    tag: Annotated[
        str,
        typer.Option("--tag", "-t", help="Image reference to build (single unit)"),
    ] = "",
    target: Annotated[
        str,
        typer.Option("--target", help="Target stage to build (single unit)"),
    ] = "",
    cache_from: Annotated[
        list[str] | None,
        typer.Option("--cache-from", help="Cache source image (single unit)"),
    ] = None,
    secrets: Annotated[
        list[str] | None,
        typer.Option("--secret", help="Build secret as id=path (single unit)"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build the images declared in a manifest.

    Units are built after the units they depend on. Units whose inputs are
    unchanged reuse the image already in the registry unless --no-cache is
    given.
    """
    from stackbuild.builds.orchestrator import (
        BuildCancelledError,
        BuildOptions,
        BuildOrchestrator,
        ConfigurationError,
        UnitBuildError,
    )
    from stackbuild.builds.plan import (
        NoUnitsToBuildError,
        PlanValidationError,
        SchedulingError,
    )
    from stackbuild.manifest import ManifestError, load_manifest

    settings = get_settings()
    configure_logging(settings.log_level)

    options = BuildOptions(
        units=list(units or []),
        no_cache=no_cache,
        tag=tag,
        target=target,
        cache_from=list(cache_from or []),
        secrets=_parse_secrets(secrets),
    )

    try:
        plan = load_manifest(file)
    except ManifestError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1) from None

    orchestrator = BuildOrchestrator.from_settings(
        settings, base_path=file.resolve().parent
    )
    try:
        report = orchestrator.build(plan, options)
    except NoUnitsToBuildError:
        if json_output:
            print_json(json.dumps({"outcomes": [], "environment": {}}, indent=2))
        else:
            console.print("[yellow]No units to build[/yellow]")
        return
    except ConfigurationError as e:
        console.print(f"[red]Error: {e}[/red]")
        if e.hint:
            console.print(f"  Hint: {e.hint}")
        raise typer.Exit(code=1) from None
    except (PlanValidationError, SchedulingError, UnitBuildError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1) from None
    except (BuildCancelledError, KeyboardInterrupt):
        console.print("[yellow]Build cancelled[/yellow]")
        raise typer.Exit(code=130) from None
    finally:
        orchestrator.close()

    if json_output:
        output = {
            "outcomes": [o.to_dict() for o in report.outcomes],
            "environment": report.environment,
        }
        print_json(json.dumps(output, indent=2))
        return

    console.print("[bold]Build Results:[/bold]")
    for outcome in report.outcomes:
        marker = " (cache hit)" if outcome.cache_hit else ""
        console.print(f"  [green]✓ {outcome.name}{marker}[/green]")
        console.print(f"      {outcome.reference}")


@app.command()
def fingerprint(
    unit: Annotated[str, typer.Argument(help="Unit to fingerprint")],
    file: Annotated[
        Path,
        typer.Option("--file", "-f", help="Path to the manifest file"),
    ] = DEFAULT_MANIFEST,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show the fingerprints used to look up cached images of a unit."""
    from stackbuild.builds.fingerprint import ServiceHasher
    from stackbuild.manifest import ManifestError, load_manifest
    from stackbuild.repository import GitRepository

    try:
        plan = load_manifest(file)
    except ManifestError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1) from None

    if unit not in plan:
        console.print(f"[red]Error: unit '{unit}' not found in {file}[/red]")
        raise typer.Exit(code=1)

    base_path = file.resolve().parent
    hasher = ServiceHasher(GitRepository(base_path), base_path=base_path)
    build_unit = plan[unit]
    result = {
        "unit": unit,
        "commit": hasher.commit_id(),
        "commit_fingerprint": hasher.hash_project_commit(build_unit),
        "context_fingerprint": hasher.hash_build_context(build_unit),
        "fingerprint": hasher.hash_service(build_unit),
    }

    if json_output:
        print_json(json.dumps(result, indent=2))
        return

    console.print(f"[bold]Unit:[/bold] {unit}")
    console.print(f"  Commit:              {result['commit'] or '(unknown)'}")
    console.print(f"  Commit fingerprint:  {result['commit_fingerprint']}")
    console.print(f"  Context fingerprint: {result['context_fingerprint']}")
    console.print(f"  Fingerprint:         {result['fingerprint']}")


if __name__ == "__main__":
    app()
