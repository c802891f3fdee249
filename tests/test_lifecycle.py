"""Tests for the patch lifecycle manager."""

import io
import json
import sys
import tempfile
from concurrent.futures import Future
from pathlib import Path

import pytest
from rich.console import Console

from corepatches.config.store import ConfigStore
from corepatches.errors import (
    CommandExecutionError,
    ManifestError,
    NoPatchError,
    UnexpectedResponseError,
)
from corepatches.gerrit.client import IncludedIn
from corepatches.install.repository import InstalledPackage
from corepatches.lifecycle.manager import PatchLifecycleManager
from corepatches.patches.materializer import PatchMaterializer


class FakeReview:
    """Review service answering from dicts; unknown ids fail like Gerrit's 404."""

    def __init__(self, changes: dict | None = None, included_in: dict | None = None):
        self.changes = changes or {}
        self.included_in = included_in or {}
        self.patch_requests = []

    def _change(self, change_id):
        if str(change_id) not in self.changes:
            raise UnexpectedResponseError(f"Gerrit answered 404 for {change_id}")
        return self.changes[str(change_id)]

    def get_subject(self, change_id):
        return self._change(change_id)["subject"]

    def get_numeric_id(self, change_id):
        return self._change(change_id)["number"]

    def get_patch(self, change_id, revision=-1):
        self.patch_requests.append((str(change_id), revision))
        return self._change(change_id).get("diff", b"")

    def get_included_in(self, change_id):
        if str(change_id) not in self.included_in:
            raise UnexpectedResponseError(f"Gerrit answered 404 for {change_id}")
        return self.included_in[str(change_id)]


class FakeMaterializer(PatchMaterializer):
    """Returns canned patches per numeric id instead of parsing diffs."""

    def __init__(self, created: dict):
        super().__init__(base_dir=".")
        self.created = created
        self.prepared = []
        self.removed = []

    def create(self, numeric_id, subject, diff, destination, include_tests):
        patches = self.created.get(numeric_id)
        if not patches:
            raise NoPatchError(f"Change {numeric_id} is empty")
        return {package: list(refs) for package, refs in patches.items()}

    def remove(self, numeric_ids, patches):
        selected = self.prepare_remove(numeric_ids, patches)
        self.removed.append(selected)
        return selected

    def prepare_remove(self, numeric_ids, patches):
        self.prepared.append(list(numeric_ids))
        return super().prepare_remove(numeric_ids, patches)


class FakeInstaller:
    def __init__(self, packages: list[InstalledPackage] | None = None):
        self.packages = packages or []
        self.uninstalled = []
        self.waits = []

    def list_installed_packages(self):
        return list(self.packages)

    def uninstall(self, package):
        self.uninstalled.append(package.name)
        handle = Future()
        handle.set_result(package.name)
        return handle

    def wait_all(self, handles):
        self.waits.append(len(list(handles)))


def _manager(tmpdir, review, materializer, installer=None, confirm=None, **kwargs):
    path = Path(tmpdir) / "composer.json"
    if not path.exists():
        path.write_text(json.dumps({"name": "acme/site"}))
    out = io.StringIO()
    err = io.StringIO()
    manager = PatchLifecycleManager(
        store=ConfigStore(path),
        review=review,
        materializer=materializer,
        installer=installer or FakeInstaller(),
        console=Console(file=out, width=200),
        err_console=Console(file=err, width=200),
        confirm=confirm or (lambda question: True),
        **kwargs,
    )
    return manager, out, err


def _review_12345():
    return FakeReview({"12345": {"subject": "[BUGFIX] Fix it", "number": 12345}})


def _materializer_12345():
    return FakeMaterializer({12345: {"vendor/pkg": ["patches/vendor-pkg-review-12345.patch"]}})


# --- Add Tests ---


def test_add_single_change():
    with tempfile.TemporaryDirectory() as tmpdir:
        manager, out, _ = _manager(tmpdir, _review_12345(), _materializer_12345())

        count = manager.add_patches(["12345"], "patches", False)

        assert count == 1
        config = manager.store.load()
        assert config.patches.to_dict() == {"vendor/pkg": ["patches/vendor-pkg-review-12345.patch"]}
        change = config.changes.get(12345)
        assert change.packages == ["vendor/pkg"]
        assert change.tests is False
        assert change.patch_directory == "patches"


def test_add_keeps_unparseable_manifest_intact():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "composer.json"
        path.write_text('{"name": "acme/site", "require": {},}')
        manager, out, _ = _manager(tmpdir, _review_12345(), _materializer_12345())

        with pytest.raises(ManifestError):
            manager.add_patches(["12345"], "patches", False)

        assert path.read_text() == '{"name": "acme/site", "require": {},}'
        assert "Change saved to 1 patch" in out.getvalue()


def test_add_twice_is_idempotent():
    with tempfile.TemporaryDirectory() as tmpdir:
        manager, _, _ = _manager(tmpdir, _review_12345(), _materializer_12345())
        manager.add_patches(["12345"], "patches", False)
        first = (Path(tmpdir) / "composer.json").read_text()

        manager.add_patches(["12345"], "other-dir", True)

        assert (Path(tmpdir) / "composer.json").read_text() == first
        change = manager.store.load().changes.get(12345)
        assert change.patch_directory == "patches"
        assert change.tests is False


def test_add_isolates_failing_changes():
    review = FakeReview(
        {
            "12345": {"subject": "Fix", "number": 12345},
            "222": {"subject": "Empty", "number": 222},
            "333": {"subject": "Other", "number": 333},
        }
    )
    materializer = FakeMaterializer(
        {
            12345: {"vendor/pkg": ["patches/vendor-pkg-review-12345.patch"]},
            333: {"vendor/other": ["patches/vendor-other-review-333.patch"]},
        }
    )
    with tempfile.TemporaryDirectory() as tmpdir:
        manager, _, err = _manager(tmpdir, review, materializer)

        count = manager.add_patches(["12345", "missing", "222", "333"], "patches", False)

        assert count == 2
        config = manager.store.load()
        assert config.changes.numbers() == [12345, 333]
        assert not config.changes.has(222)
        assert "Error getting change from Gerrit" in err.getvalue()
        assert "No patches saved for this change" in err.getvalue()


def test_add_persists_each_change_before_the_next():
    class ExplodingReview(FakeReview):
        def get_subject(self, change_id):
            if change_id == "boom":
                raise RuntimeError("unexpected")
            return super().get_subject(change_id)

    with tempfile.TemporaryDirectory() as tmpdir:
        manager, _, _ = _manager(
            tmpdir,
            ExplodingReview({"12345": {"subject": "Fix", "number": 12345}}),
            _materializer_12345(),
        )
        with pytest.raises(RuntimeError):
            manager.add_patches(["12345", "boom"], "patches", False)

        assert ConfigStore(Path(tmpdir) / "composer.json").load().changes.has(12345)


def test_add_nothing_created():
    with tempfile.TemporaryDirectory() as tmpdir:
        installer = FakeInstaller([InstalledPackage("vendor/pkg", "1.0.0")])
        manager, _, err = _manager(tmpdir, FakeReview(), FakeMaterializer({}), installer)

        assert manager.add_patches(["404"], "patches", True) == 0
        assert "No patches created" in err.getvalue()
        assert installer.uninstalled == []


def test_add_with_tests_switches_to_source_and_uninstalls():
    review = FakeReview({"12345": {"subject": "Fix", "number": 12345}})
    materializer = FakeMaterializer(
        {
            12345: {
                "vendor/pkg": ["patches/vendor-pkg-review-12345.patch"],
                "vendor/gone": ["patches/vendor-gone-review-12345.patch"],
            }
        }
    )
    installer = FakeInstaller(
        [InstalledPackage("vendor/pkg", "1.0.0"), InstalledPackage("vendor/unrelated", "2.0.0")]
    )
    with tempfile.TemporaryDirectory() as tmpdir:
        manager, _, err = _manager(tmpdir, review, materializer, installer)

        assert manager.add_patches(["12345"], "patches", True) == 2

        config = manager.store.load()
        assert config.preferred_install.to_dict() == {"vendor/pkg": "source"}
        assert config.preferred_install_changed.to_list() == ["vendor/pkg"]
        assert installer.uninstalled == ["vendor/pkg"]
        assert installer.waits == [1]
        assert "Patches for non-existent packages found" in err.getvalue()
        assert "vendor/gone" in err.getvalue()


def test_add_with_tests_keeps_user_source_preference():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "composer.json"
        path.write_text(
            json.dumps({"extra": {"core-patches": {"preferred-install": {"vendor/pkg": "source"}}}})
        )
        installer = FakeInstaller([InstalledPackage("vendor/pkg", "1.0.0")])
        manager, _, _ = _manager(tmpdir, _review_12345(), _materializer_12345(), installer)

        manager.add_patches(["12345"], "patches", True)

        config = manager.store.load()
        assert config.preferred_install.to_dict() == {"vendor/pkg": "source"}
        assert config.preferred_install_changed.to_list() == []


# --- Remove Tests ---


def _seed(tmpdir, patches, changes, preferred=None, changed=None):
    namespace = {
        "applied-changes": {
            str(number): {"packages": packages, "tests": False, "patch-directory": "patches", "revision": -1}
            for number, packages in changes.items()
        }
    }
    if preferred:
        namespace["preferred-install"] = preferred
    if changed:
        namespace["preferred-install-changed"] = changed
    (Path(tmpdir) / "composer.json").write_text(
        json.dumps({"name": "acme/site", "extra": {"patches": patches, "core-patches": namespace}})
    )


def test_remove_single_change_reverts_source_install():
    with tempfile.TemporaryDirectory() as tmpdir:
        _seed(
            tmpdir,
            {"vendor/pkg": ["patches/vendor-pkg-review-12345.patch"]},
            {12345: ["vendor/pkg"]},
            preferred={"vendor/pkg": "source"},
            changed=["vendor/pkg"],
        )
        installer = FakeInstaller([InstalledPackage("vendor/pkg", "1.0.0")])
        manager, _, _ = _manager(tmpdir, _review_12345(), _materializer_12345(), installer)

        assert manager.remove_patches(["12345"]) == 1

        config = manager.store.load()
        assert not config.patches.has("vendor/pkg")
        assert not config.preferred_install.has("vendor/pkg")
        assert not config.preferred_install_changed.has("vendor/pkg")
        assert not config.changes.has(12345)
        assert installer.uninstalled == ["vendor/pkg"]
        assert installer.waits == [1]
        assert json.loads((Path(tmpdir) / "composer.json").read_text()) == {"name": "acme/site"}


def test_remove_keeps_user_source_preference():
    with tempfile.TemporaryDirectory() as tmpdir:
        _seed(
            tmpdir,
            {"vendor/pkg": ["patches/vendor-pkg-review-12345.patch"]},
            {12345: ["vendor/pkg"]},
            preferred={"vendor/pkg": "source", "vendor/other": "dist"},
        )
        manager, _, _ = _manager(tmpdir, _review_12345(), _materializer_12345())

        manager.remove_patches(["12345"], skip_uninstall=True)

        config = manager.store.load()
        assert config.preferred_install.to_dict() == {"vendor/pkg": "source", "vendor/other": "dist"}


def test_remove_untracked_change_is_skipped():
    with tempfile.TemporaryDirectory() as tmpdir:
        _seed(
            tmpdir,
            {"vendor/pkg": ["patches/vendor-pkg-review-777.patch"]},
            {777: ["vendor/pkg"]},
        )
        before = (Path(tmpdir) / "composer.json").read_text()
        manager, _, err = _manager(tmpdir, _review_12345(), _materializer_12345())

        assert manager.remove_patches(["12345"]) == 0

        assert (Path(tmpdir) / "composer.json").read_text() == before
        assert "was not applied by core-patches" in err.getvalue()
        assert "No patches removed" in err.getvalue()


def test_remove_keeps_package_with_remaining_patches():
    review = FakeReview(
        {
            "12345": {"subject": "Fix", "number": 12345},
            "777": {"subject": "Other", "number": 777},
        }
    )
    with tempfile.TemporaryDirectory() as tmpdir:
        _seed(
            tmpdir,
            {
                "vendor/pkg": [
                    "patches/vendor-pkg-review-12345.patch",
                    "patches/vendor-pkg-review-777.patch",
                ]
            },
            {12345: ["vendor/pkg"], 777: ["vendor/pkg"]},
            preferred={"vendor/pkg": "source"},
            changed=["vendor/pkg"],
        )
        installer = FakeInstaller([InstalledPackage("vendor/pkg", "1.0.0")])
        manager, _, _ = _manager(tmpdir, review, FakeMaterializer({}), installer)

        assert manager.remove_patches(["12345"]) == 1

        config = manager.store.load()
        assert config.patches.get("vendor/pkg") == ["patches/vendor-pkg-review-777.patch"]
        assert config.preferred_install.has("vendor/pkg", "source")
        assert config.preferred_install_changed.has("vendor/pkg")
        assert config.changes.numbers() == [777]
        assert installer.uninstalled == ["vendor/pkg"]


def test_remove_skip_uninstall():
    with tempfile.TemporaryDirectory() as tmpdir:
        _seed(
            tmpdir,
            {"vendor/pkg": ["patches/vendor-pkg-review-12345.patch"]},
            {12345: ["vendor/pkg"]},
        )
        installer = FakeInstaller([InstalledPackage("vendor/pkg", "1.0.0")])
        manager, _, _ = _manager(tmpdir, _review_12345(), _materializer_12345(), installer)

        assert manager.remove_patches(["12345"], skip_uninstall=True) == 1
        assert installer.uninstalled == []


def test_remove_drops_change_without_matching_patches():
    with tempfile.TemporaryDirectory() as tmpdir:
        _seed(
            tmpdir,
            {"vendor/pkg": ["patches/vendor-pkg-review-777.patch"]},
            {12345: ["vendor/pkg"], 777: ["vendor/pkg"]},
        )
        manager, _, _ = _manager(tmpdir, _review_12345(), _materializer_12345())

        assert manager.remove_patches(["12345"]) == 0
        assert manager.store.load().changes.numbers() == [777]


def test_add_then_remove_keeps_registries_consistent():
    review = FakeReview(
        {
            "1": {"subject": "One", "number": 1},
            "2": {"subject": "Two", "number": 2},
        }
    )
    materializer = FakeMaterializer(
        {
            1: {"vendor/a": ["p/vendor-a-review-1.patch"], "vendor/b": ["p/vendor-b-review-1.patch"]},
            2: {"vendor/b": ["p/vendor-b-review-2.patch"]},
        }
    )
    with tempfile.TemporaryDirectory() as tmpdir:
        manager, _, _ = _manager(tmpdir, review, materializer)
        manager.add_patches(["1", "2"], "p", False)
        manager.remove_patches(["1"])

        config = manager.store.load()
        tracked = {p for change in config.changes for p in change.packages}
        assert set(config.patches.packages()) <= tracked
        assert config.patches.to_dict() == {"vendor/b": ["p/vendor-b-review-2.patch"]}


# --- Update Tests ---


def test_update_all_tracked_changes():
    review = FakeReview(
        {
            "1": {"subject": "One", "number": 1},
            "2": {"subject": "Two", "number": 2},
        }
    )
    materializer = FakeMaterializer(
        {
            1: {"vendor/a": ["patches/vendor-a-review-1.patch"]},
            2: {"vendor/b": ["custom/vendor-b-review-2.patch"]},
        }
    )
    with tempfile.TemporaryDirectory() as tmpdir:
        _seed(
            tmpdir,
            {"vendor/a": ["patches/vendor-a-review-1.patch"], "vendor/b": ["custom/vendor-b-review-2.patch"]},
            {1: ["vendor/a"], 2: ["vendor/b"]},
        )
        installer = FakeInstaller([InstalledPackage("vendor/a", "1.0.0")])
        manager, _, _ = _manager(tmpdir, review, materializer, installer)

        assert manager.update_patches([]) == 2
        assert review.patch_requests == [("1", -1), ("2", -1)]
        assert installer.uninstalled == []


def test_update_selected_changes_ignores_unknown_ids():
    review = FakeReview(
        {
            "1": {"subject": "One", "number": 1},
            "2": {"subject": "Two", "number": 2},
        }
    )
    materializer = FakeMaterializer(
        {
            1: {"vendor/a": ["patches/vendor-a-review-1.patch"]},
            2: {"vendor/b": ["patches/vendor-b-review-2.patch"]},
        }
    )
    with tempfile.TemporaryDirectory() as tmpdir:
        _seed(
            tmpdir,
            {"vendor/a": ["patches/vendor-a-review-1.patch"], "vendor/b": ["patches/vendor-b-review-2.patch"]},
            {1: ["vendor/a"], 2: ["vendor/b"]},
        )
        manager, _, err = _manager(tmpdir, review, materializer)

        assert manager.update_patches(["2", "99", "not-a-number"]) == 1
        assert review.patch_requests == [("2", -1)]
        assert err.getvalue() == ""


# --- Verify Tests ---


def _verify_setup(tmpdir, confirm):
    _seed(
        tmpdir,
        {"typo3/cms-core": ["patches/typo3-cms-core-review-12345.patch"]},
        {12345: ["typo3/cms-core"], 777: ["typo3/cms-frontend"]},
    )
    review = FakeReview(
        included_in={
            "12345": IncludedIn(tags=["v11.5.2", "v11.5.3"], branches=["main"]),
            "777": IncludedIn(tags=["v11.5.3"]),
        }
    )
    materializer = FakeMaterializer({})
    manager, _, _ = _manager(tmpdir, review, materializer, confirm=confirm)
    return manager, materializer


def test_verify_confirmed_obsolete_change():
    questions = []

    def confirm(question):
        questions.append(question)
        return True

    with tempfile.TemporaryDirectory() as tmpdir:
        manager, materializer = _verify_setup(tmpdir, confirm)
        obsolete = manager.verify_patches_for_package(InstalledPackage("typo3/cms-core", "11.5.3.0"))

        assert obsolete == ["12345"]
        assert len(questions) == 1
        assert "12345" in questions[0]
        assert materializer.prepared == [[12345]]
        # dry run only
        assert manager.store.load().changes.has(12345)


def test_verify_declined_removal():
    with tempfile.TemporaryDirectory() as tmpdir:
        manager, materializer = _verify_setup(tmpdir, lambda question: False)
        obsolete = manager.verify_patches_for_package(InstalledPackage("typo3/cms-core", "11.5.3.0"))

        assert obsolete == []
        assert materializer.prepared == []


def test_verify_branch_match():
    with tempfile.TemporaryDirectory() as tmpdir:
        manager, _ = _verify_setup(tmpdir, lambda question: True)
        assert manager.verify_patches_for_package(InstalledPackage("typo3/cms-core", "dev-main")) == ["12345"]


def test_verify_no_match():
    with tempfile.TemporaryDirectory() as tmpdir:
        manager, _ = _verify_setup(tmpdir, lambda question: True)
        assert manager.verify_patches_for_package(InstalledPackage("typo3/cms-core", "11.5.1.0")) == []
        assert manager.verify_patches_for_package(InstalledPackage("vendor/unknown", "11.5.3.0")) == []


def test_verify_skips_change_without_included_in_data():
    with tempfile.TemporaryDirectory() as tmpdir:
        _seed(tmpdir, {}, {5: ["typo3/cms-core"]})
        manager, _, err = _manager(tmpdir, FakeReview(), FakeMaterializer({}))

        assert manager.verify_patches_for_package(InstalledPackage("typo3/cms-core", "11.5.3.0")) == []
        assert "Error getting included-in data for change 5" in err.getvalue()


# --- Lock Tests ---


def test_update_lock_success():
    with tempfile.TemporaryDirectory() as tmpdir:
        manager, _, _ = _manager(
            tmpdir, FakeReview(), FakeMaterializer({}),
            lock_command=[sys.executable, "-c", "print('lock updated')"],
        )
        output = io.StringIO()
        manager.update_lock(output)
        assert "lock updated" in output.getvalue()


def test_update_lock_forwards_both_streams_in_order():
    with tempfile.TemporaryDirectory() as tmpdir:
        script = (
            "import sys; print('first', flush=True); "
            "print('warning', file=sys.stderr, flush=True); print('last', flush=True)"
        )
        manager, _, _ = _manager(
            tmpdir, FakeReview(), FakeMaterializer({}),
            lock_command=[sys.executable, "-c", script],
        )
        output = io.StringIO()
        manager.update_lock(output)
        assert output.getvalue().splitlines() == ["first", "warning", "last"]


def test_default_lock_command():
    with tempfile.TemporaryDirectory() as tmpdir:
        manager, _, _ = _manager(tmpdir, FakeReview(), FakeMaterializer({}))
        assert manager.lock_command == ["composer", "update", "--lock"]


def test_update_lock_failure_carries_exit_code():
    with tempfile.TemporaryDirectory() as tmpdir:
        manager, _, _ = _manager(
            tmpdir, FakeReview(), FakeMaterializer({}),
            lock_command=[sys.executable, "-c", "import sys; sys.exit(3)"],
        )
        with pytest.raises(CommandExecutionError) as exc_info:
            manager.update_lock(io.StringIO())
        assert exc_info.value.code == 3


def test_update_lock_missing_command():
    with tempfile.TemporaryDirectory() as tmpdir:
        manager, _, _ = _manager(
            tmpdir, FakeReview(), FakeMaterializer({}),
            lock_command=["core-patches-no-such-binary"],
        )
        with pytest.raises(CommandExecutionError) as exc_info:
            manager.update_lock()
        assert exc_info.value.code == 127
