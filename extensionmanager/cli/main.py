"""Command line interface of the extension manager

Usage:
    extensionmanager catalogs list
    extensionmanager catalogs add <url> [--name <name>] [--description <text>]
    extensionmanager catalogs remove <name> [--remove-extensions]
    extensionmanager extensions list <catalog>
    extensionmanager install <catalog> <extension> [--release <name>] [--optional-deps]
    extensionmanager remove <catalog> <extension>
    extensionmanager updates
    extensionmanager modules
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional
from urllib.parse import urlparse

import click
from rich.console import Console
from rich.progress import BarColumn, Progress, TaskProgressColumn, TextColumn
from rich.table import Table

from extensionmanager import __version__
from extensionmanager.config.settings import ManagerSettings, SettingsManager, get_settings_manager
from extensionmanager.core.exceptions import ExtensionError
from extensionmanager.core.fetcher import GitHubRawLinkFinder
from extensionmanager.core.manager import ExtensionCatalogManager
from extensionmanager.core.models import Extension, InstallationStep, SavedCatalog

logger = logging.getLogger(__name__)
console = Console()

CATALOG_FILE_NAME = "catalog.json"


def create_manager(settings: ManagerSettings) -> ExtensionCatalogManager:
    """Create a manager configured with the given settings"""
    return ExtensionCatalogManager(
        settings.get_extension_directory(),
        settings.host_version,
        default_catalogs=settings.get_default_catalogs(),
        request_timeout=settings.request_timeout,
        download_retries=settings.download_retries,
        poll_interval=settings.poll_interval,
    )


@contextmanager
def _open_manager(ctx: click.Context) -> Iterator[ExtensionCatalogManager]:
    try:
        manager = create_manager(ctx.obj)
    except ExtensionError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise click.Abort()

    try:
        yield manager
    except ExtensionError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise click.Abort()
    finally:
        manager.close()


def _find_catalog(manager: ExtensionCatalogManager, name: str) -> SavedCatalog:
    for catalog in manager.catalogs:
        if catalog.name == name:
            return catalog
    console.print(f"[red]Error: Catalog not found: {name}[/red]")
    raise click.Abort()


def _find_extension(manager: ExtensionCatalogManager, catalog: SavedCatalog, name: str) -> Extension:
    extension = manager.get_catalog_manifest(catalog).get_extension(name)
    if extension is None:
        console.print(f"[red]Error: Extension {name} not found in {catalog.name}[/red]")
        raise click.Abort()
    return extension


def _get_raw_uri(url: str) -> str:
    """Resolve GitHub repository URLs to the raw URL of their catalog file"""
    if urlparse(url).hostname in ("github.com", "www.github.com"):
        finder = GitHubRawLinkFinder()
        try:
            return finder.get_raw_link(url, lambda name: name == CATALOG_FILE_NAME)
        finally:
            finder.close()
    return url


@click.group(name="extensionmanager")
@click.option("--directory", "-d", type=click.Path(file_okay=False),
              help="Extension directory (overrides settings)")
@click.option("--host-version", help="Host version, e.g. v0.6.0 (overrides settings)")
@click.option("--settings", "settings_path", type=click.Path(dir_okay=False),
              help="Path to settings.json")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logs")
@click.version_option(__version__)
@click.pass_context
def cli(ctx: click.Context, directory: Optional[str], host_version: Optional[str],
        settings_path: Optional[str], verbose: bool):
    """Manage catalogs and extensions"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format='%(levelname)s: %(message)s'
    )

    settings_manager = SettingsManager(Path(settings_path)) if settings_path else get_settings_manager()
    settings = settings_manager.load()
    if directory:
        settings.extension_directory = directory
    if host_version:
        settings.host_version = host_version
    ctx.obj = settings


# Catalogs

@cli.group(name="catalogs")
def catalogs_group():
    """Catalog commands"""
    pass


@catalogs_group.command(name="list")
@click.pass_context
def list_catalogs_cmd(ctx: click.Context):
    """List saved catalogs"""
    with _open_manager(ctx) as manager:
        catalogs = manager.catalogs.snapshot()

    if not catalogs:
        console.print("No catalogs saved.")
        return

    table = Table(title=f"Catalogs ({len(catalogs)})", show_header=True, header_style="bold cyan")
    table.add_column("Name", style="cyan")
    table.add_column("Description")
    table.add_column("URI")
    table.add_column("Deletable")
    for catalog in catalogs:
        table.add_row(catalog.name, catalog.description, catalog.uri, "Yes" if catalog.deletable else "No")
    console.print(table)


@catalogs_group.command(name="add")
@click.argument("url")
@click.option("--name", help="Catalog name (defaults to the name given by the catalog)")
@click.option("--description", help="Catalog description (defaults to the description given by the catalog)")
@click.pass_context
def add_catalog_cmd(ctx: click.Context, url: str, name: Optional[str], description: Optional[str]):
    """Add a catalog from its URL or its GitHub repository"""
    with _open_manager(ctx) as manager:
        raw_uri = _get_raw_uri(url)
        manifest = manager.get_catalog_manifest(
            SavedCatalog(name=name or url, uri=url, raw_uri=raw_uri)
        )
        catalog = SavedCatalog(
            name=name or manifest.name,
            description=description if description is not None else manifest.description,
            uri=url,
            raw_uri=raw_uri,
            deletable=True
        )

        if not manager.add_catalogs([catalog]):
            console.print(f"[red]Error: A catalog named {catalog.name} already exists[/red]")
            raise click.Abort()

    console.print(f"[green]✓ Catalog {catalog.name} added ({len(manifest.extensions)} extensions)[/green]")


@catalogs_group.command(name="remove")
@click.argument("name")
@click.option("--remove-extensions", is_flag=True, help="Also delete the extensions installed from this catalog")
@click.pass_context
def remove_catalog_cmd(ctx: click.Context, name: str, remove_extensions: bool):
    """Remove a saved catalog"""
    with _open_manager(ctx) as manager:
        catalog = _find_catalog(manager, name)
        if not manager.remove_catalogs([catalog], remove_installed_extensions=remove_extensions):
            console.print(f"[red]Error: Catalog {name} cannot be removed[/red]")
            raise click.Abort()

    console.print(f"[green]✓ Catalog {name} removed[/green]")


# Extensions

@cli.group(name="extensions")
def extensions_group():
    """Extension commands"""
    pass


@extensions_group.command(name="list")
@click.argument("catalog_name")
@click.pass_context
def list_extensions_cmd(ctx: click.Context, catalog_name: str):
    """List the extensions of a catalog"""
    with _open_manager(ctx) as manager:
        catalog = _find_catalog(manager, catalog_name)
        manifest = manager.get_catalog_manifest(catalog)

        table = Table(title=f"{manifest.name} ({len(manifest.extensions)} extensions)",
                      show_header=True, header_style="bold cyan")
        table.add_column("Name", style="cyan")
        table.add_column("Author")
        table.add_column("Latest compatible")
        table.add_column("Installed")
        for extension in manifest.extensions:
            release = extension.get_max_compatible_release(manager.version)
            installed = manager.get_installed_extension(catalog, extension).get()
            table.add_row(
                ("★ " if extension.starred else "") + extension.name,
                extension.author,
                release.name if release else "[dim]none[/dim]",
                installed.release_name if installed else "[dim]no[/dim]"
            )

    console.print(table)


@cli.command(name="install")
@click.argument("catalog_name")
@click.argument("extension_name")
@click.option("--release", "release_name", help="Release to install (defaults to the latest compatible one)")
@click.option("--optional-deps", is_flag=True, help="Also install optional dependencies")
@click.pass_context
def install_cmd(ctx: click.Context, catalog_name: str, extension_name: str,
                release_name: Optional[str], optional_deps: bool):
    """Install or update an extension"""
    with _open_manager(ctx) as manager:
        catalog = _find_catalog(manager, catalog_name)
        extension = _find_extension(manager, catalog, extension_name)

        if release_name:
            release = extension.get_release(release_name)
            if release is None:
                console.print(f"[red]Error: Release {release_name} of {extension_name} not found[/red]")
                raise click.Abort()
        else:
            release = extension.get_max_compatible_release(manager.version)
            if release is None:
                console.print(f"[red]Error: No release of {extension_name} is compatible with {manager.version}[/red]")
                raise click.Abort()

        console.print(f"Installing {extension.name} {release.name} from {catalog.name}")

        with Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=console,
            transient=True,
        ) as progress:
            task = progress.add_task(description="Starting...", total=1.0)

            def on_status_changed(step: InstallationStep, resource: str) -> None:
                verb = "Downloading" if step == InstallationStep.DOWNLOADING else "Extracting"
                progress.update(task, description=f"{verb} {Path(urlparse(resource).path).name}")

            error = manager.install_or_update_extension(
                catalog,
                extension,
                release,
                install_optional_dependencies=optional_deps,
                on_progress=lambda value: progress.update(task, completed=value),
                on_status_changed=on_status_changed,
            )

    if error is not None:
        console.print(f"[red]Error: Installation of {extension_name} failed: {error}[/red]")
        raise click.Abort()

    console.print(f"[green]✓ {extension_name} {release.name} installed[/green]")


@cli.command(name="remove")
@click.argument("catalog_name")
@click.argument("extension_name")
@click.pass_context
def remove_cmd(ctx: click.Context, catalog_name: str, extension_name: str):
    """Remove an installed extension"""
    with _open_manager(ctx) as manager:
        catalog = _find_catalog(manager, catalog_name)
        if manager.get_installed_extension(catalog, extension_name).get() is None:
            console.print(f"[yellow]{extension_name} is not installed[/yellow]")
            return
        manager.remove_extension(catalog, extension_name)

    console.print(f"[green]✓ {extension_name} removed[/green]")


@cli.command(name="updates")
@click.pass_context
def updates_cmd(ctx: click.Context):
    """List available updates of installed extensions"""
    with _open_manager(ctx) as manager:
        updates = manager.get_available_updates().result()

    if not updates:
        console.print("All extensions are up to date.")
        return

    table = Table(title=f"Available updates ({len(updates)})", show_header=True, header_style="bold cyan")
    table.add_column("Extension", style="cyan")
    table.add_column("Installed")
    table.add_column("Available", style="green")
    for update in updates:
        table.add_row(update.extension_name, update.current_version, update.new_version)
    console.print(table)


@cli.command(name="modules")
@click.pass_context
def modules_cmd(ctx: click.Context):
    """List module archives found in the extension directory"""
    with _open_manager(ctx) as manager:
        manual = manager.manually_installed_modules.snapshot()
        managed = manager.catalog_managed_modules.snapshot()

    console.print(f"[bold]Manually installed ({len(manual)}):[/bold]")
    for path in manual:
        console.print(f"  {path}")
    console.print(f"[bold]Installed from catalogs ({len(managed)}):[/bold]")
    for path in managed:
        console.print(f"  {path}")


def main():
    cli(prog_name="extensionmanager")


if __name__ == "__main__":
    main()
