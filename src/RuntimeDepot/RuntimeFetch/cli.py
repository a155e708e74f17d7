# === NAVMAP v1 ===
# {
#   "module": "RuntimeDepot.RuntimeFetch.cli",
#   "purpose": "Typer command-line interface over RuntimeClient",
#   "sections": [
#     {"id": "context", "name": "CliContext", "anchor": "CTX", "kind": "class"},
#     {"id": "main", "name": "main callback", "anchor": "MAIN", "kind": "function"},
#     {"id": "catalog", "name": "Catalog commands", "anchor": "CAT", "kind": "function"},
#     {"id": "inventory", "name": "Inventory commands", "anchor": "INV", "kind": "function"},
#     {"id": "repositories", "name": "Repository commands", "anchor": "REP", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Command-line interface for the runtime client.

Global options (``--base-directory``, ``--config``, ``-v``) go before the
subcommand::

    runtimedepot --config depot.yaml repository-update
    runtimedepot catalog-list --platform linux --version "[21,22)"
    runtimedepot download 3f5a9c1e

Identities may be abbreviated to any unique prefix, as shown in the tables.
Failures print a red message and exit with status 1.
"""

from __future__ import annotations

import contextlib
from pathlib import Path
from typing import Iterable, Iterator, List, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .archives import UnpackOptions
from .client import RuntimeClient
from .errors import NotFoundError, RuntimeDepotError
from .logging_config import setup_logging
from .runtime import RuntimeConfiguration, RuntimeDescription, RuntimeVersionRange, is_runtime_identity
from .search import RuntimeSearchCriteria
from .settings import RuntimeDepotSettings, get_default_settings, load_settings

SHORT_ID_LENGTH = 16

_console = Console()


# ============================================================================
# CliContext (CTX)
# ============================================================================


class CliContext:
    """Per-invocation state shared by every command."""

    def __init__(
        self,
        settings: RuntimeDepotSettings,
        base_directory: Optional[Path] = None,
        verbosity: int = 0,
    ) -> None:
        self.settings = settings
        self.base_directory = base_directory
        self.verbosity = verbosity
        self.console = _console

    @contextlib.contextmanager
    def client(self) -> Iterator[RuntimeClient]:
        with RuntimeClient.open(self.base_directory, settings=self.settings) as client:
            yield client


app = typer.Typer(
    name="runtimedepot",
    help="Discover, download, verify and unpack runtime distributions",
    no_args_is_help=True,
)

_context: Optional[CliContext] = None


def get_context() -> CliContext:
    if _context is None:
        raise RuntimeError("CLI context not initialized")
    return _context


@contextlib.contextmanager
def _reporting_errors() -> Iterator[None]:
    try:
        yield
    except (RuntimeDepotError, ValueError, TimeoutError) as exc:
        _console.print(f"[red]Error:[/red] {escape(str(exc))}")
        raise typer.Exit(1) from exc


# ============================================================================
# main callback (MAIN)
# ============================================================================


@app.callback(invoke_without_command=False)
def main(
    base_directory: Optional[Path] = typer.Option(
        None,
        "--base-directory",
        "-d",
        help="Directory holding the inventory and repository caches",
    ),
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        envvar="RUNTIMEDEPOT_CONFIG",
        help="Path to a YAML settings file",
    ),
    verbosity: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase verbosity (-v for INFO, -vv for DEBUG)",
    ),
) -> None:
    """Runtime depot command-line interface."""

    global _context
    with _reporting_errors():
        settings = load_settings(config) if config is not None else get_default_settings(copy=True)
    logging_config = settings.logging.model_copy()
    if verbosity:
        logging_config.level = "DEBUG" if verbosity >= 2 else "INFO"
    setup_logging(logging_config)
    _context = CliContext(settings, base_directory=base_directory, verbosity=verbosity)


# ============================================================================
# helpers
# ============================================================================


def _criteria(
    version: Optional[str],
    platform: Optional[str],
    architecture: Optional[str],
    vm: Optional[str],
    configuration: Optional[str],
    tags: Optional[List[str]],
) -> RuntimeSearchCriteria:
    return RuntimeSearchCriteria(
        version_range=RuntimeVersionRange.parse(version) if version else None,
        platform=platform,
        architecture=architecture,
        vm=vm,
        configuration=RuntimeConfiguration.parse(configuration) if configuration else None,
        required_tags=frozenset(tags or ()),
    )


def _resolve_id(prefix: str, candidates: Iterable[str]) -> str:
    prefix = prefix.strip().lower()
    if not is_runtime_identity(prefix):
        raise ValueError(f"{prefix!r} is not a runtime identity or identity prefix")
    matches = sorted({candidate for candidate in candidates if candidate.startswith(prefix)})
    if len(matches) == 1:
        return matches[0]
    if not matches:
        return prefix
    raise ValueError(f"identity prefix {prefix!r} is ambiguous ({len(matches)} matches)")


def _inventory_id(client: RuntimeClient, prefix: str) -> str:
    return _resolve_id(prefix, (record.id for record in client.inventory.records()))


def _runtime_columns(table: Table) -> None:
    table.add_column("Id", no_wrap=True)
    table.add_column("Version")
    table.add_column("Platform")
    table.add_column("Arch")
    table.add_column("VM")
    table.add_column("Config")


def _runtime_cells(description: RuntimeDescription) -> List[str]:
    return [
        description.id[:SHORT_ID_LENGTH],
        description.version.to_external_string(),
        description.platform,
        description.architecture,
        description.vm,
        description.configuration.value,
    ]


_VERSION_OPTION = typer.Option(None, "--version", help="Version or interval such as [21,22)")
_PLATFORM_OPTION = typer.Option(None, "--platform")
_ARCH_OPTION = typer.Option(None, "--architecture")
_VM_OPTION = typer.Option(None, "--vm")
_CONFIGURATION_OPTION = typer.Option(None, "--configuration", help="jdk or jre")
_TAG_OPTION = typer.Option(None, "--tag", help="Required tag; repeatable")


# ============================================================================
# Catalog commands (CAT)
# ============================================================================


@app.command("catalog-list")
def catalog_list(
    version: Optional[str] = _VERSION_OPTION,
    platform: Optional[str] = _PLATFORM_OPTION,
    architecture: Optional[str] = _ARCH_OPTION,
    vm: Optional[str] = _VM_OPTION,
    configuration: Optional[str] = _CONFIGURATION_OPTION,
    tag: Optional[List[str]] = _TAG_OPTION,
    update: bool = typer.Option(False, "--update", "-u", help="Refresh repositories first"),
) -> None:
    """List runtimes offered by the configured repositories."""

    ctx = get_context()
    with _reporting_errors(), ctx.client() as client:
        criteria = _criteria(version, platform, architecture, vm, configuration, tag)
        if update:
            client.repository_update().result()
        entries = client.catalog_search(criteria).result()
        table = Table(title="Catalog")
        _runtime_columns(table)
        table.add_column("Repositories")
        for entry in sorted(entries, key=lambda item: item.description.version, reverse=True):
            table.add_row(*_runtime_cells(entry.description), ", ".join(entry.repositories))
        ctx.console.print(table)
        ctx.console.print(f"{len(entries)} runtime(s)")


@app.command("download")
def download(
    runtime_id: str = typer.Argument(..., help="Identity or unique prefix"),
    force: bool = typer.Option(False, "--force", help="Download even if already in the inventory"),
) -> None:
    """Download, verify and store a runtime from the catalog."""

    ctx = get_context()
    with _reporting_errors(), ctx.client() as client:
        entries = client.catalog_search().result()
        resolved = _resolve_id(runtime_id, (entry.id for entry in entries))
        operation = client.catalog_download(resolved) if force else client.catalog_download_if_necessary(resolved)
        record = operation.result()
        ctx.console.print(f"[green]Stored[/green] {record.id}", soft_wrap=True)
        ctx.console.print(str(client.inventory.path_of(record.id)), soft_wrap=True, highlight=False)


# ============================================================================
# Inventory commands (INV)
# ============================================================================


@app.command("inventory-list")
def inventory_list(
    version: Optional[str] = _VERSION_OPTION,
    platform: Optional[str] = _PLATFORM_OPTION,
    architecture: Optional[str] = _ARCH_OPTION,
    vm: Optional[str] = _VM_OPTION,
    configuration: Optional[str] = _CONFIGURATION_OPTION,
    tag: Optional[List[str]] = _TAG_OPTION,
) -> None:
    """List runtimes held in the local inventory."""

    ctx = get_context()
    with _reporting_errors(), ctx.client() as client:
        criteria = _criteria(version, platform, architecture, vm, configuration, tag)
        records = client.inventory_search(criteria).result()
        table = Table(title="Inventory")
        _runtime_columns(table)
        table.add_column("Verified")
        table.add_column("Unpacked")
        for record in sorted(records, key=lambda item: item.description.version, reverse=True):
            table.add_row(
                *_runtime_cells(record.description),
                "yes" if record.verified else "no",
                str(len(record.unpacked_paths)),
            )
        ctx.console.print(table)
        ctx.console.print(f"{len(records)} runtime(s)")


@app.command("delete")
def delete(runtime_id: str = typer.Argument(..., help="Identity or unique prefix")) -> None:
    """Remove a runtime, its archive and its default unpack directory."""

    ctx = get_context()
    with _reporting_errors(), ctx.client() as client:
        resolved = _inventory_id(client, runtime_id)
        if client.inventory_delete(resolved).result():
            ctx.console.print(f"[green]Deleted[/green] {resolved}", soft_wrap=True)
        else:
            ctx.console.print(f"[yellow]Not present[/yellow] {resolved}", soft_wrap=True)


@app.command("verify")
def verify(runtime_id: str = typer.Argument(..., help="Identity or unique prefix")) -> None:
    """Recompute a stored archive's hash and compare it with its record."""

    ctx = get_context()
    with _reporting_errors(), ctx.client() as client:
        result = client.inventory_verify(_inventory_id(client, runtime_id)).result()
        ctx.console.print(f"[green]Verified[/green] {result.id} ({result.expected.algorithm})", soft_wrap=True)


@app.command("path-of")
def path_of(runtime_id: str = typer.Argument(..., help="Identity or unique prefix")) -> None:
    """Print the local archive path of a runtime."""

    ctx = get_context()
    with _reporting_errors(), ctx.client() as client:
        path = client.inventory_path_of(_inventory_id(client, runtime_id)).result()
        ctx.console.print(str(path), soft_wrap=True, highlight=False)


@app.command("unpack")
def unpack(
    runtime_id: str = typer.Argument(..., help="Identity or unique prefix"),
    target: Optional[Path] = typer.Option(None, "--target", "-t", help="Empty or missing directory"),
    strip_leading_directory: bool = typer.Option(False, "--strip-leading-directory"),
    strip_non_owner_writable: bool = typer.Option(False, "--strip-non-owner-writable"),
) -> None:
    """Extract a stored archive."""

    ctx = get_context()
    options = UnpackOptions(
        strip_leading_directory=strip_leading_directory,
        strip_non_owner_writable=strip_non_owner_writable,
    )
    with _reporting_errors(), ctx.client() as client:
        resolved = _inventory_id(client, runtime_id)
        path = client.inventory_unpack(resolved, target, options=options).result()
        ctx.console.print(str(path), soft_wrap=True, highlight=False)


@app.command("runtime-show")
def runtime_show(runtime_id: str = typer.Argument(..., help="Identity or unique prefix")) -> None:
    """Show everything known about one runtime."""

    ctx = get_context()
    with _reporting_errors(), ctx.client() as client:
        entries = {entry.id: entry for entry in client.catalog_search().result()}
        records = {record.id: record for record in client.inventory.records()}
        resolved = _resolve_id(runtime_id, set(entries) | set(records))
        entry = entries.get(resolved)
        record = records.get(resolved)
        if entry is None and record is None:
            raise NotFoundError(f"unknown runtime {runtime_id}")
        description = record.description if record is not None else entry.description  # type: ignore[union-attr]

        table = Table(show_header=False, title=f"Runtime {resolved[:SHORT_ID_LENGTH]}")
        table.add_column("Field", style="bold")
        table.add_column("Value", overflow="fold")
        table.add_row("id", description.id)
        table.add_row("version", description.version.to_external_string())
        table.add_row("platform", description.platform)
        table.add_row("architecture", description.architecture)
        table.add_row("vm", description.vm)
        table.add_row("configuration", description.configuration.value)
        table.add_row("archive", description.archive_uri)
        table.add_row("size", str(description.archive_size))
        table.add_row("hash", str(description.archive_hash))
        table.add_row("tags", " ".join(sorted(description.tags)))
        if entry is not None:
            table.add_row("repositories", ", ".join(entry.repositories))
        if record is not None:
            table.add_row("verified", "yes" if record.verified else "no")
            table.add_row("unpacked", "\n".join(str(path) for path in record.unpacked_paths) or "-")
        ctx.console.print(table)


# ============================================================================
# Repository commands (REP)
# ============================================================================


@app.command("repository-list")
def repository_list() -> None:
    """List open repositories and how many runtimes each currently offers."""

    ctx = get_context()
    with _reporting_errors(), ctx.client() as client:
        table = Table(title="Repositories")
        table.add_column("URI", no_wrap=True)
        table.add_column("Name")
        table.add_column("Runtimes", justify="right")
        for summary in client.repository_list().result():
            table.add_row(summary.uri, summary.name, str(summary.runtime_count))
        ctx.console.print(table)


@app.command("repository-update")
def repository_update(
    uri: Optional[str] = typer.Argument(None, help="Update only this repository"),
) -> None:
    """Refresh one or all repositories from their upstream sources."""

    ctx = get_context()
    with _reporting_errors(), ctx.client() as client:
        result = client.repository_update(uri).result()
        for updated in result.updated:
            ctx.console.print(f"[green]Updated[/green] {escape(updated)}", soft_wrap=True)
        for failed, cause in result.failed.items():
            ctx.console.print(f"[red]Failed[/red] {escape(failed)}: {escape(str(cause))}", soft_wrap=True)
        if result.failed:
            raise typer.Exit(1)


__all__ = ["app", "main", "CliContext", "get_context"]
