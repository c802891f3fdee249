"""core-patches CLI: the main entry point."""

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from corepatches import __version__

console = Console()
err_console = Console(stderr=True)


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", "config_file", default=None, help="Manifest file (default: $COMPOSER or composer.json)")
@click.option("--gerrit-url", default=None, help="Gerrit base URL")
@click.option("--verbose", "-v", is_flag=True, help="Show details of skipped changes")
@click.pass_context
def main(ctx: click.Context, config_file: str | None, gerrit_url: str | None, verbose: bool):
    """core-patches: apply Gerrit review changes as patches on installed packages.

    Patches are recorded in the manifest's ``extra`` section together with
    the changes they came from, so they can be refreshed, verified against
    new releases, and removed again.
    """
    from corepatches.settings import Settings

    ctx.obj = {
        "settings": Settings.from_env(config_file=config_file, gerrit_url=gerrit_url),
        "verbose": verbose,
    }


def _manager(ctx: click.Context):
    from corepatches.config.store import ConfigStore
    from corepatches.gerrit.client import GerritClient
    from corepatches.install.repository import LocalRepository
    from corepatches.lifecycle.manager import PatchLifecycleManager
    from corepatches.patches.materializer import PatchMaterializer

    settings = ctx.obj["settings"]
    review = GerritClient(settings.gerrit_url, timeout=settings.timeout)
    installer = LocalRepository(settings.resolved_vendor_dir)
    ctx.call_on_close(review.close)
    ctx.call_on_close(installer.close)

    return PatchLifecycleManager(
        store=ConfigStore(settings.config_file),
        review=review,
        materializer=PatchMaterializer(base_dir=settings.working_dir),
        installer=installer,
        console=console,
        err_console=err_console,
        verbose=ctx.obj["verbose"],
        lock_command=settings.lock_command,
    )


def _run(ctx: click.Context, operation, *args):
    from corepatches.errors import ManifestError

    try:
        return operation(*args)
    except ManifestError as e:
        err_console.print(f"[red]{escape(str(e))}[/]")
        ctx.exit(1)


def _update_lock(ctx: click.Context, manager) -> None:
    from corepatches.errors import CommandExecutionError

    console.print("[green]Updating the lock file[/]")
    try:
        manager.update_lock()
    except CommandExecutionError as e:
        err_console.print(f"[red]{escape(str(e))}[/]")
        ctx.exit(e.code)


# ── Add ──────────────────────────────────────────────────────────────


@main.command()
@click.argument("change_ids", nargs=-1, required=True)
@click.option("--patch-directory", "-p", default="patches", help="Directory the patch files are written to")
@click.option("--tests", "-t", is_flag=True, help="Also patch test files (switches packages to source installs)")
@click.option("--no-lock", is_flag=True, help="Do not update the lock file afterwards")
@click.pass_context
def add(ctx: click.Context, change_ids: tuple, patch_directory: str, tests: bool, no_lock: bool):
    """Add patches for one or more Gerrit changes.

    CHANGE_IDS are Gerrit Change-Ids or change numbers.
    """
    manager = _manager(ctx)
    count = _run(ctx, manager.add_patches, list(change_ids), patch_directory, tests)

    if count > 0:
        console.print(f"\n[green]{count} patch{'' if count == 1 else 'es'} added[/]")
        if not no_lock:
            _update_lock(ctx, manager)


# ── Remove ───────────────────────────────────────────────────────────


@main.command()
@click.argument("change_ids", nargs=-1, required=True)
@click.option("--skip-uninstall", is_flag=True, help="Keep patched packages installed")
@click.option("--no-lock", is_flag=True, help="Do not update the lock file afterwards")
@click.pass_context
def remove(ctx: click.Context, change_ids: tuple, skip_uninstall: bool, no_lock: bool):
    """Remove the patches of one or more previously added changes."""
    manager = _manager(ctx)
    count = _run(ctx, manager.remove_patches, list(change_ids), skip_uninstall)

    if count > 0:
        console.print(f"\n[green]{count} patch{'' if count == 1 else 'es'} removed[/]")
        if not no_lock:
            _update_lock(ctx, manager)


# ── Update ───────────────────────────────────────────────────────────


@main.command()
@click.argument("change_ids", nargs=-1)
@click.pass_context
def update(ctx: click.Context, change_ids: tuple):
    """Re-fetch patches of applied changes (all of them if none are given)."""
    manager = _manager(ctx)
    count = _run(ctx, manager.update_patches, list(change_ids))

    if count > 0:
        console.print(f"\n[green]{count} patch{'' if count == 1 else 'es'} updated[/]")
    else:
        console.print("[yellow]No patches updated.[/]")


# ── Verify ───────────────────────────────────────────────────────────


@main.command()
@click.argument("packages", nargs=-1)
@click.option("--remove/--no-remove", "remove_obsolete", default=True, help="Remove obsolete patches right away")
@click.option("--skip-uninstall", is_flag=True, help="Keep packages installed when removing patches")
@click.pass_context
def verify(ctx: click.Context, packages: tuple, remove_obsolete: bool, skip_uninstall: bool):
    """Check whether installed packages already contain the applied changes.

    PACKAGES restricts the check to the given package names.
    """
    manager = _manager(ctx)
    installed = manager.installer.list_installed_packages()
    if packages:
        installed = [p for p in installed if p.name in packages]

    obsolete: list[str] = []
    for package in installed:
        for change_id in manager.verify_patches_for_package(package):
            if change_id not in obsolete:
                obsolete.append(change_id)

    if not obsolete:
        console.print("[green]No obsolete patches found.[/]")
        return

    console.print(f"Obsolete changes: [cyan]{', '.join(obsolete)}[/]")
    if remove_obsolete:
        _run(ctx, manager.remove_patches, obsolete, skip_uninstall)


# ── Lock ─────────────────────────────────────────────────────────────


@main.command(name="update-lock")
@click.pass_context
def update_lock(ctx: click.Context):
    """Refresh the lock file so it matches the manifest."""
    _update_lock(ctx, _manager(ctx))


# ── List ─────────────────────────────────────────────────────────────


@main.command(name="list")
@click.pass_context
def list_changes(ctx: click.Context):
    """List the applied changes and their patches."""
    manager = _manager(ctx)
    changes = manager.applied_changes()
    patches = manager.store.config.patches

    if not changes:
        console.print("[yellow]No changes applied.[/]")
        return

    table = Table(title=f"Applied Changes ({len(changes)})")
    table.add_column("Change", style="cyan", justify="right")
    table.add_column("Packages")
    table.add_column("Tests", justify="center")
    table.add_column("Directory", style="dim")
    table.add_column("Patches", justify="right", style="green")

    for change in changes:
        patch_count = sum(
            1
            for package in change.packages
            for reference in patches.get(package)
            if manager.materializer.patch_is_part_of_change(reference, change.number)
        )
        table.add_row(
            str(change.number),
            ", ".join(change.packages),
            "[green]Y[/]" if change.tests else "[dim]N[/]",
            change.patch_directory,
            str(patch_count),
        )

    console.print(table)


if __name__ == "__main__":
    main()
