"""Patch lifecycle manager: add, remove, update and verify review patches.

Keeps three things in step:

1. the patch files on disk (via the materializer),
2. the registries in the manifest (``Patches``, ``Changes``,
   ``PreferredInstall``, ``PreferredInstallChanged``),
3. the installed packages (via the installer).

Every public operation takes a batch of change ids. A bad change id is
warned about and skipped; it never aborts its siblings. Registries are saved
after each processed change so earlier work survives a later failure.
Uninstalls are issued for the whole batch and awaited once.
"""

from __future__ import annotations

import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, TextIO

from rich.console import Console
from rich.markup import escape
from rich.prompt import Confirm

from corepatches.config.models import LATEST_REVISION, Change, Config, PreferredInstall
from corepatches.config.store import ConfigStore
from corepatches.errors import CommandExecutionError, NoPatchError, ReviewServiceError
from corepatches.gerrit.client import ReviewService
from corepatches.install.repository import InstalledPackage, Installer
from corepatches.lifecycle.obsolescence import find_inclusion
from corepatches.patches.materializer import Materializer
from corepatches.settings import DEFAULT_LOCK_COMMAND


@dataclass
class ChangeOutcome:
    """What happened to one change id of a batch."""

    change_id: str
    numeric_id: int | None = None
    patches: dict[str, list[str]] = field(default_factory=dict)
    skip_reason: str = ""

    @property
    def skipped(self) -> bool:
        return bool(self.skip_reason)

    @property
    def patch_count(self) -> int:
        return sum(len(refs) for refs in self.patches.values())


class PatchLifecycleManager:
    """Orchestrates the patch lifecycle over one manifest.

    Parameters
    ----------
    store : ConfigStore
        Store of the manifest holding the registries.
    review : ReviewService
        Review-service client (Gerrit).
    materializer : Materializer
        Creates and locates patch files.
    installer : Installer
        Installed-package repository.
    console : Console | None
        Informational output; warnings go to ``err_console``.
    confirm : Callable[[str], bool] | None
        Operator confirmation; defaults to a ``rich`` prompt answering yes.
    verbose : bool
        Also print the underlying error of skipped changes.
    lock_command : list[str] | None
        Command that refreshes the lock file.
    """

    def __init__(
        self,
        store: ConfigStore,
        review: ReviewService,
        materializer: Materializer,
        installer: Installer,
        console: Console | None = None,
        err_console: Console | None = None,
        confirm: Callable[[str], bool] | None = None,
        verbose: bool = False,
        lock_command: list[str] | None = None,
    ) -> None:
        self.store = store
        self.review = review
        self.materializer = materializer
        self.installer = installer
        self.console = console or Console()
        self.err_console = err_console or Console(stderr=True)
        self.confirm = confirm or self._prompt_confirm
        self.verbose = verbose
        self.lock_command = lock_command or shlex.split(DEFAULT_LOCK_COMMAND)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def add_patches(self, change_ids: list[str], destination: str, include_tests: bool) -> int:
        """Create and register patches for the given changes.

        Returns:
            The number of patch files created.
        """
        config = self.store.load()
        affected: list[str] = []
        patches_count = self._create_patches(
            config, change_ids, destination, include_tests, affected
        )

        if patches_count == 0:
            self._warn("No patches created")
            return 0

        if include_tests:
            self._reconfigure_source_install(config, list(dict.fromkeys(affected)))

        return patches_count

    def remove_patches(self, change_ids: list[str], skip_uninstall: bool = False) -> int:
        """Remove the patches of the given changes.

        Only changes previously added by core-patches are considered.

        Returns:
            The number of patch references removed.
        """
        config = self.store.load()
        numeric_ids: list[int] = []

        for change_id in change_ids:
            self.console.print(
                f"[green]Collecting information for change[/] [cyan]{escape(str(change_id))}[/]"
            )

            try:
                numeric_id = self.review.get_numeric_id(change_id)
            except ReviewServiceError as e:
                self._warn("Error getting numeric ID", e)
                continue
            self.console.print(f"  - Numeric ID is [cyan]{numeric_id}[/]")

            if not config.changes.has(numeric_id):
                self._warn("Change was not applied by core-patches, skipping")
                continue

            if numeric_id not in numeric_ids:
                numeric_ids.append(numeric_id)

        if not config.patches or not numeric_ids:
            self._warn("No patches removed")
            return 0

        self.console.print("[green]Removing patches[/]")
        to_remove = self.materializer.remove(numeric_ids, config.patches.to_dict())

        self.console.print("  - Removing patches from [green]the manifest[/]")
        patches_count = 0
        for package, references in to_remove.items():
            patches_count += len(config.patches.remove(package, references))
        self.store.save()

        if to_remove:
            # Revert source install where the last patch of a package is gone
            for package in to_remove:
                if not config.patches.has(package):
                    self.console.print(
                        f"  - Reconfiguring [green]preferred-install[/] for package [green]{package}[/]"
                    )
                    self._unset_source_install(config, package)

            if not skip_uninstall:
                self._uninstall(
                    list(to_remove),
                    "[green]Removing package {} so that it can be reinstalled without the patch.[/]",
                )

        for numeric_id in numeric_ids:
            config.changes.remove(numeric_id)
        self.store.save()

        return patches_count

    def update_patches(self, change_ids: list[str]) -> int:
        """Re-fetch the patches of tracked changes; all of them if ``change_ids`` is empty.

        Ids that are not tracked are ignored.

        Returns:
            The number of patch files created.
        """
        config = self.store.load()
        affected: list[str] = []
        patches_count = 0
        wanted = [str(c) for c in change_ids]

        for change in config.changes:
            if wanted and str(change.number) not in wanted:
                continue
            patches_count += self._create_patches(
                config,
                [str(change.number)],
                change.patch_directory,
                change.tests,
                affected,
                revision=change.revision,
            )

        return patches_count

    def verify_patches_for_package(self, package: InstalledPackage) -> list[str]:
        """Find applied changes already contained in ``package``'s version.

        Asks the operator before marking each one. The caller removes the
        returned changes with ``remove_patches``.
        """
        config = self.store.load()
        patches = config.patches.to_dict()
        obsolete: list[str] = []

        for change in config.changes:
            if package.name not in change.packages:
                continue

            try:
                included_in = self.review.get_included_in(str(change.number))
            except ReviewServiceError as e:
                self._warn(f"Error getting included-in data for change {change.number}", e)
                continue

            if find_inclusion(package.version, included_in) is None:
                continue

            if self._ask_removal(change.number):
                obsolete.append(str(change.number))
                self.materializer.prepare_remove([change.number], patches)

        return obsolete

    def update_lock(self, output: TextIO | None = None, working_dir: str | Path | None = None) -> None:
        """Refresh the lock file through the dependency manager.

        Raises:
            CommandExecutionError: If the command is missing or exits non-zero.
        """
        cwd = Path(working_dir) if working_dir else self.store.path.resolve().parent
        pipe = subprocess.PIPE if output is not None else None
        try:
            proc = subprocess.Popen(
                self.lock_command,
                cwd=cwd,
                stdout=pipe,
                stderr=subprocess.STDOUT if output is not None else None,
                text=True,
            )
        except FileNotFoundError as e:
            raise CommandExecutionError(f"Command not found: {self.lock_command[0]}", 127) from e

        with proc:
            if output is not None:
                # stderr is merged into stdout and forwarded line by line
                for line in proc.stdout:
                    output.write(line)
            returncode = proc.wait()

        self._check_command_result(
            returncode, 0, "Error while updating the Composer lock file."
        )

    def applied_changes(self) -> list[Change]:
        return list(self.store.load().changes)

    # ------------------------------------------------------------------
    # Patch creation
    # ------------------------------------------------------------------

    def _create_patches(
        self,
        config: Config,
        change_ids: list[str],
        destination: str,
        include_tests: bool,
        affected: list[str],
        revision: int = LATEST_REVISION,
    ) -> int:
        patches_count = 0

        for change_id in change_ids:
            outcome = self._create_change(change_id, destination, include_tests, revision)
            if outcome.skipped:
                self._warn(outcome.skip_reason)
                continue

            count = outcome.patch_count
            self.console.print(
                f"  - Change saved to [cyan]{count}[/] patch{'' if count == 1 else 'es'}"
            )

            self.console.print("  - Adding patches to [green]the manifest[/]")
            for package, references in outcome.patches.items():
                config.patches.add(package, references)
            if not config.changes.has(outcome.numeric_id):
                config.changes.add(
                    outcome.numeric_id,
                    list(outcome.patches),
                    tests=include_tests,
                    patch_directory=destination,
                )
            self.store.save()

            affected.extend(outcome.patches)
            patches_count += count

        return patches_count

    def _create_change(
        self, change_id: str, destination: str, include_tests: bool, revision: int
    ) -> ChangeOutcome:
        self.console.print(f"[green]Creating patches for change[/] [cyan]{escape(str(change_id))}[/]")
        outcome = ChangeOutcome(change_id=str(change_id))

        try:
            subject = self.review.get_subject(change_id)
            self.console.print(f"  - Subject is [cyan]{escape(subject)}[/]")

            outcome.numeric_id = self.review.get_numeric_id(change_id)
            self.console.print(f"  - Numeric ID is [cyan]{outcome.numeric_id}[/]")

            diff = self.review.get_patch(change_id, revision)
        except ReviewServiceError as e:
            self._detail(e)
            outcome.skip_reason = "Error getting change from Gerrit"
            return outcome

        try:
            outcome.patches = self.materializer.create(
                outcome.numeric_id, subject, diff, destination, include_tests
            )
        except NoPatchError as e:
            self._detail(e)
            outcome.skip_reason = "No patches saved for this change"
            return outcome

        if not outcome.patches:
            outcome.skip_reason = "No patches saved for this change"
        return outcome

    # ------------------------------------------------------------------
    # Preferred install and uninstall
    # ------------------------------------------------------------------

    def _reconfigure_source_install(self, config: Config, affected: list[str]) -> None:
        self.console.print("[green]Reconfiguring [cyan]preferred-install[/] to [cyan]source[/][/]")

        missing = list(affected)
        for package in self.installer.list_installed_packages():
            if package.name in missing:
                self.console.print(f"  - [green]{package.name}[/]")
                self._set_source_install(config, package.name)
                missing.remove(package.name)

        self._uninstall([p for p in affected if p not in missing], None)

        if missing:
            self._warn("Patches for non-existent packages found, these are:")
            for package in missing:
                self.err_console.print(f"  - [green]{package}[/]")

    def _set_source_install(self, config: Config, package: str) -> None:
        if config.preferred_install.has(package, PreferredInstall.METHOD_SOURCE):
            # already installed from source, possibly on the user's request
            return

        config.preferred_install.add(package, PreferredInstall.METHOD_SOURCE)
        config.preferred_install_changed.add(package)
        self.store.save()

    def _unset_source_install(self, config: Config, package: str) -> None:
        if not config.preferred_install_changed.has(package):
            # source was not set by core-patches
            return

        config.preferred_install.remove(package)
        config.preferred_install_changed.remove(package)
        self.store.save()

    def _uninstall(self, packages: list[str], message: str | None) -> None:
        """Uninstall the installed ones among ``packages`` and wait for all of them."""
        handles = []
        for package in self.installer.list_installed_packages():
            if package.name in packages:
                if message:
                    self.console.print(message.format(package.name))
                handles.append(self.installer.uninstall(package))

        if handles:
            self.installer.wait_all(handles)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _ask_removal(self, number: int) -> bool:
        return self.confirm(
            f"The change {number} appears to be present in the version being installed"
            " or updated. Should the patch for this change be removed?"
        )

    def _prompt_confirm(self, question: str) -> bool:
        return Confirm.ask(f"[green]{question}[/]", default=True, console=self.console)

    def _check_command_result(self, result_code: int, expected_code: int, message: str) -> None:
        if result_code != expected_code:
            raise CommandExecutionError(message, result_code)

    def _warn(self, message: str, error: Exception | None = None) -> None:
        self.err_console.print(f"[yellow]{escape(message)}[/]")
        if error is not None:
            self._detail(error)

    def _detail(self, error: Exception) -> None:
        if self.verbose:
            self.err_console.print(f"[yellow]{escape(str(error))}[/]")
