"""
Command-line interface for the model installer.

Provides a typer CLI for installing, importing, listing, activating and
removing Stable Diffusion models.
"""

import json
from dataclasses import asdict
from pathlib import Path
from typing import Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from velocity.logging_utils import configure_logging, log_directory, operation_log

from .catalog import CATALOG, find_descriptor
from .config import get_config
from .installer import InstallStage, ModelInstaller, ProgressEvent
from .registry import ModelRegistry

app = typer.Typer(
    name="velocity-models",
    help="Velocity Model Installer - Install and manage Core ML Stable Diffusion models",
    no_args_is_help=True,
)
console = Console()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug output on the console"),
):
    """Configure logging for every command."""
    configure_logging(verbose=verbose, log_dir=_log_dir())


def _log_dir() -> Path:
    return log_directory(get_config().models_root)


def _format_size(size_bytes: int) -> str:
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            return f"{size:.1f} {unit}"
        size /= 1024.0
    return f"{size:.1f} PB"


def _registry() -> ModelRegistry:
    config = get_config()
    config.ensure_directories()
    return ModelRegistry.from_config(config)


def _installer(registry: ModelRegistry, activate: bool = True) -> ModelInstaller:
    return ModelInstaller(registry, config=get_config(), activate_if_unset=activate)


class _ProgressView:
    """Renders install events on a rich progress bar."""

    def __init__(self, progress: Progress, model_id: str):
        self.progress = progress
        self.task = progress.add_task(model_id, total=100)

    def __call__(self, event: ProgressEvent) -> None:
        label = event.stage.value
        if event.stage == InstallStage.FETCHING and event.bytes_expected:
            label = (
                f"fetching {_format_size(event.bytes_written)}"
                f" / {_format_size(event.bytes_expected)}"
            )
        self.progress.update(
            self.task, completed=event.fraction * 100, description=label
        )


def _run_with_progress(model_id: str, action):
    with operation_log(model_id, _log_dir()), Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        console=console,
        transient=True,
    ) as progress:
        return action(_ProgressView(progress, model_id))


@app.command("catalog")
def show_catalog(
    json_output: bool = typer.Option(False, "--json", help="Emit JSON"),
):
    """List the built-in model catalog."""
    if json_output:
        typer.echo(json.dumps([asdict(d) for d in CATALOG], indent=2))
        return
    table = Table(title="Model Catalog")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Size", justify="right")
    table.add_column("Source", overflow="fold")
    for descriptor in CATALOG:
        table.add_row(
            descriptor.id,
            descriptor.display_name,
            descriptor.declared_size_label,
            descriptor.locator,
        )
    console.print(table)


@app.command("install")
def install_model(
    model: str = typer.Argument(
        ..., help="Catalog id, Hugging Face repo (owner/repo or URL), or direct .zip/.mlmodel URL"
    ),
    model_id: Optional[str] = typer.Option(
        None, "--id", help="Model id to install under (custom locators only)"
    ),
    activate: bool = typer.Option(
        True,
        "--activate-if-unset/--no-activate",
        help="Make the model active when no model is active yet",
    ),
):
    """Download and install a model."""
    try:
        registry = _registry()
        installer = _installer(registry, activate)
        descriptor = find_descriptor(model, model_id=model_id)
        installed = _run_with_progress(
            descriptor.id,
            lambda view: installer.install(descriptor, listener=view),
        )
        rprint(f"✅ [green]Installed:[/green] {installed.display_name}")
        rprint(f"   📁 Files stored at: {installed.root_path}")
        rprint(f"   💾 Size: {_format_size(installed.size_bytes)}")
    except Exception as exc:  # noqa: BLE001
        rprint(f"❌ [red]Install failed:[/red] {exc}")
        raise typer.Exit(code=1)


@app.command("import")
def import_model(
    path: Path = typer.Argument(
        ..., help="Local .zip archive, .mlmodel file, .mlmodelc bundle or model directory"
    ),
    model_id: Optional[str] = typer.Option(None, "--id", help="Override the model id"),
    activate: bool = typer.Option(
        True,
        "--activate-if-unset/--no-activate",
        help="Make the model active when no model is active yet",
    ),
):
    """Install a model from local storage."""
    try:
        registry = _registry()
        installer = _installer(registry, activate)
        installed = _run_with_progress(
            model_id or path.stem,
            lambda view: installer.import_path(path, model_id=model_id, listener=view),
        )
        rprint(f"✅ [green]Imported:[/green] {installed.display_name}")
        rprint(f"   📁 Files stored at: {installed.root_path}")
    except Exception as exc:  # noqa: BLE001
        rprint(f"❌ [red]Import failed:[/red] {exc}")
        raise typer.Exit(code=1)


@app.command("list")
def list_models(
    json_output: bool = typer.Option(False, "--json", help="Emit JSON"),
):
    """List installed models."""
    try:
        registry = _registry()
        active = registry.get_active()
        models = registry.enumerate()
        if json_output:
            payload = [
                {
                    "id": m.id,
                    "name": m.display_name,
                    "path": str(m.root_path),
                    "size_bytes": m.size_bytes,
                    "active": m.id == active,
                }
                for m in models
            ]
            typer.echo(json.dumps(payload, indent=2))
            return
        if not models:
            rprint("[yellow]No models installed[/yellow]")
            return
        table = Table(title="Installed Models")
        table.add_column("", width=1)
        table.add_column("ID", style="cyan")
        table.add_column("Name")
        table.add_column("Size", justify="right")
        for m in models:
            table.add_row(
                "*" if m.id == active else "",
                m.id,
                m.display_name,
                _format_size(m.size_bytes),
            )
        console.print(table)
    except Exception as exc:  # noqa: BLE001
        rprint(f"❌ [red]Listing failed:[/red] {exc}")
        raise typer.Exit(code=1)


@app.command("activate")
def activate_model(model_id: str = typer.Argument(..., help="Installed model id")):
    """Select the model used for generation."""
    try:
        registry = _registry()
        if not registry.is_installed(model_id):
            rprint(f"⚠️  [yellow]{model_id} is not a valid installed model[/yellow]")
        registry.set_active(model_id)
        rprint(f"✅ [green]Active model:[/green] {model_id}")
    except Exception as exc:  # noqa: BLE001
        rprint(f"❌ [red]Activation failed:[/red] {exc}")
        raise typer.Exit(code=1)


@app.command("active")
def show_active():
    """Show the active model and the resources directory handed to inference."""
    registry = _registry()
    active = registry.get_active()
    resources = registry.resolve_active_resources_path()
    rprint(f"Active model: {active or '-'}")
    rprint(f"Resources:    {resources or '-'}")
    if resources is None:
        raise typer.Exit(code=1)


@app.command("remove")
def remove_model(
    model_id: str = typer.Argument(..., help="Installed model id"),
    force: bool = typer.Option(False, "--force", help="Don't ask for confirmation"),
):
    """Delete an installed model from disk."""
    try:
        registry = _registry()
        path = registry.model_path(model_id)
        if not force:
            size = _format_size(registry.size_of(model_id)) if path.exists() else "-"
            rprint(f"🗑️  [yellow]Will remove:[/yellow] {path} ({size})")
            if not typer.confirm("Proceed?"):
                rprint("❌ [yellow]Cancelled[/yellow]")
                return
        registry.delete(model_id)
        rprint(f"✅ [green]Removed[/green] {model_id}")
    except FileNotFoundError:
        rprint(f"❌ [red]Model not found:[/red] {model_id}")
        raise typer.Exit(code=1)
    except Exception as exc:  # noqa: BLE001
        rprint(f"❌ [red]Removal failed:[/red] {exc}")
        raise typer.Exit(code=1)


@app.command("config")
def show_config():
    """Show the effective installer configuration."""
    config = get_config()
    table = Table(title="Installer Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("models_root", str(config.models_root))
    table.add_row("state_path", str(config.resolved_state_path))
    table.add_row("staging_root", str(config.staging_root))
    table.add_row("min_payload_bytes", str(config.min_payload_bytes))
    table.add_row("request_timeout", str(config.request_timeout))
    table.add_row("hf_endpoint", config.hf_endpoint)
    table.add_row("max_concurrent_installs", str(config.max_concurrent_installs))
    console.print(table)


if __name__ == "__main__":
    app()
