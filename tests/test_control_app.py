"""Tests for the operator commands and the command-line entry point.

Tests mediacache/control.py and mediacache/app.py: command output, lock
handling, dry-run and exit codes.
"""

import os
from unittest.mock import patch

import pytest

from conftest import KB, create_test_file
from mediacache.app import EXIT_FAILURE, EXIT_OK, EXIT_USAGE, main
from mediacache.control import CacheControl
from mediacache.exceptions import LockNotAcquired, PreconditionError
from mediacache.manifest import CacheStatus, ManifestStore

WEBHOOK = {"type": "webhook", "webhook_url": "https://example.invalid/hook"}


@pytest.fixture(autouse=True)
def no_external_commands():
    """Keep docker and crontab out of every test in this module."""
    with patch("mediacache.consumer.ConsumerMount.is_attached", return_value=None), \
            patch("mediacache.schedule.CronSchedule.installed_jobs", return_value={}):
        yield


def _link(media_env, category, name, size_kb=None):
    target = os.path.join(media_env["library"], "movies", name)
    if size_kb is not None:
        create_test_file(target, size_bytes=size_kb * KB)
    link = os.path.join(media_env["cache"], category, name)
    os.makedirs(os.path.dirname(link), exist_ok=True)
    os.symlink(target, link)
    return link


@pytest.fixture
def control(make_config, guard):
    return CacheControl(make_config(), guard)


# ============================================================================
# TestCacheControl
# ============================================================================

class TestCacheControl:
    """Tests for the individual commands."""

    def test_status(self, control, media_env):
        _link(media_env, "movies", "a.mkv", 1)
        _link(media_env, "tv", "b.mkv", 1)

        text = control.status()

        assert "Cache status: NOT_INITIALIZED" in text
        assert "movies     1 items" in text
        assert "total      2 cached items" in text
        assert "Cache mount status unknown" in text
        assert "Scheduled jobs: none" in text

    def test_health_lists_first_broken_links(self, control, media_env):
        for i in range(12):
            _link(media_env, "tv", f"gone{i:02d}.mkv")
        _link(media_env, "movies", "ok.mkv", 1)

        lines = control.health().splitlines()

        assert "Found 12 broken symlinks" in lines
        assert sum(1 for line in lines if "Broken link:" in line) == 10
        assert "  ... and 2 more" in lines
        assert "Valid symlinks: 1" in lines

    def test_health_clean_cache(self, control, media_env):
        text = control.health()
        assert "No broken symlinks found" in text
        assert "Run 'clean'" not in text

    def test_clean(self, control, media_env):
        broken = _link(media_env, "tv", "gone.mkv")
        valid = _link(media_env, "movies", "ok.mkv", 1)

        assert control.clean() == "Removed 1 broken symlinks"
        assert not os.path.lexists(broken)
        assert os.path.islink(valid)

    def test_clean_dry_run(self, make_config, guard, media_env):
        broken = _link(media_env, "tv", "gone.mkv")

        text = CacheControl(make_config(), guard, dry_run=True).clean()

        assert text.startswith("[DRY RUN] Would remove 1")
        assert os.path.lexists(broken)

    def test_top_by_size(self, control, media_env):
        _link(media_env, "movies", "small.mkv", 1)
        _link(media_env, "movies", "large.mkv", 30)
        _link(media_env, "tv", "medium.mkv", 10)
        _link(media_env, "tv", "gone.mkv")

        lines = control.top(2).splitlines()

        assert lines[0] == "=== Top 2 Cached Items (by size) ==="
        assert [line.split()[0] for line in lines[1:]] == ["large.mkv", "medium.mkv"]

    def test_clear_category(self, control, media_env):
        _link(media_env, "tv", "a.mkv", 1)
        kept = _link(media_env, "movies", "b.mkv", 1)

        text = control.clear("tv")

        assert "Removed 1 items from tv/" in text
        assert os.path.islink(kept)
        assert control.index.load("tv") == []
        assert control.index.path("tv").exists()

    def test_clear_all(self, control, media_env):
        _link(media_env, "tv", "a.mkv", 1)
        _link(media_env, "movies", "b.mkv", 1)

        assert control.clear("all").endswith("Cleared 2 cached items")
        assert list(control.cache.iter_links()) == []

    def test_clear_reports_lock_conflict(self, control, media_env, other_guard):
        link = _link(media_env, "tv", "a.mkv", 1)
        other_guard.acquire("popular-sweep")

        with pytest.raises(LockNotAcquired):
            control.clear("tv")
        assert os.path.islink(link)

    def test_clear_unknown_category(self, control):
        with pytest.raises(ValueError, match="Unknown category"):
            control.clear("anime")

    def test_sweep_unknown_job(self, control):
        with pytest.raises(ValueError, match="Unknown job"):
            control.sweep("nightly")

    def test_space(self, control, media_env):
        _link(media_env, "movies", "a.mkv", 2)
        text = control.space()
        assert "Cache filesystem: Total" in text
        assert "Effective cache size: 2.00 KB" in text

    @patch("mediacache.control.require_command", return_value="/usr/bin/crontab")
    def test_enable_and_disable(self, mock_require, control):
        with patch.object(control.schedule, "install") as mock_install, \
                patch.object(control.schedule, "remove", return_value=4) as mock_remove:
            control.enable()
            assert control.store.read().status == CacheStatus.ACTIVE
            mock_install.assert_called_once()

            control.disable()
            assert control.store.read().status == CacheStatus.DISABLED
            mock_remove.assert_called_once()

    @patch("mediacache.control.require_command", return_value="/usr/bin/crontab")
    def test_enable_dry_run(self, mock_require, make_config, guard):
        control = CacheControl(make_config(), guard, dry_run=True)
        with patch.object(control.schedule, "install") as mock_install:
            assert control.enable().startswith("[DRY RUN]")
        mock_install.assert_not_called()
        assert not os.path.exists(control.store.manifest_file)

    def test_rollback_refuses_dry_run(self, make_config, guard):
        with pytest.raises(PreconditionError):
            CacheControl(make_config(), guard, dry_run=True).rollback(assume_yes=True)

    def test_activate_mount_prints_instructions(self, control):
        assert ":/media-cache:ro" in control.activate_mount()


# ============================================================================
# TestMain
# ============================================================================

class TestMain:
    """Tests for argument handling and exit codes."""

    def test_status(self, settings_file, capsys):
        assert main(["status", "--config", settings_file()]) == EXIT_OK
        assert "=== Media Cache Status ===" in capsys.readouterr().out

    def test_default_command_is_status(self, settings_file, capsys):
        assert main(["--config", settings_file()]) == EXIT_OK
        assert "Cache status:" in capsys.readouterr().out

    def test_version(self, capsys):
        assert main(["--version"]) == EXIT_OK
        assert capsys.readouterr().out.startswith("media-cache ")

    def test_missing_config(self, tmp_path):
        assert main(["status", "--config", str(tmp_path / "missing.json")]) == EXIT_USAGE

    def test_invalid_config(self, settings_file):
        assert main(["status", "--config", settings_file(extensions=".mkv")]) == EXIT_USAGE

    def test_config_option_needs_value(self):
        assert main(["status", "--config"]) == EXIT_USAGE

    def test_unknown_command(self, settings_file):
        assert main(["frobnicate", "--config", settings_file()]) == EXIT_USAGE

    def test_missing_argument(self, settings_file):
        assert main(["clear", "--config", settings_file()]) == EXIT_USAGE

    def test_sweep(self, settings_file, media_env):
        create_test_file(os.path.join(media_env["library"], "tv", "e1.mkv"), size_bytes=KB)

        assert main(["sweep", "popular-sweep", "--config", settings_file()]) == EXIT_OK

        assert os.path.islink(os.path.join(media_env["cache"], "tv", "e1.mkv"))
        assert os.path.exists(os.path.join(media_env["logs"], "popular-sweep.log"))

    def test_sweep_precondition_failure(self, settings_file, media_env):
        config = settings_file(library_root=os.path.join(media_env["root"], "unmounted"))
        assert main(["sweep", "popular-sweep", "--config", config]) == EXIT_FAILURE

    def test_sweep_lock_conflict(self, settings_file, other_guard):
        other_guard.acquire("popular-sweep")
        assert main(["sweep", "popular-sweep", "--config", settings_file()]) == EXIT_FAILURE

    def test_scheduled_sweep_skips_when_locked(self, settings_file, media_env, other_guard):
        create_test_file(os.path.join(media_env["library"], "tv", "e1.mkv"), size_bytes=KB)
        other_guard.acquire("popular-sweep")

        assert main(["sweep", "popular-sweep", "--scheduled", "--config", settings_file()]) == EXIT_OK

        assert not os.path.lexists(os.path.join(media_env["cache"], "tv", "e1.mkv"))

    @patch("mediacache.logging_config.requests.post")
    def test_skipped_sweep_sends_no_notification(self, mock_post, settings_file, other_guard):
        other_guard.acquire("popular-sweep")
        config = settings_file(notification=WEBHOOK)

        assert main(["sweep", "popular-sweep", "--scheduled", "--config", config]) == EXIT_OK

        mock_post.assert_not_called()

    @patch("mediacache.logging_config.requests.post")
    def test_disabled_sweep_sends_no_notification(self, mock_post, settings_file, make_config, guard):
        ManifestStore(str(make_config().get_manifest_file()), guard).set_status(CacheStatus.DISABLED)

        assert main(["sweep", "popular-sweep", "--config", settings_file(notification=WEBHOOK)]) == EXIT_OK

        mock_post.assert_not_called()

    @patch("mediacache.logging_config.requests.post")
    def test_precondition_failure_notifies(self, mock_post, settings_file, media_env):
        config = settings_file(library_root=os.path.join(media_env["root"], "unmounted"),
                               notification=WEBHOOK)

        assert main(["sweep", "popular-sweep", "--scheduled", "--config", config]) == EXIT_FAILURE

        mock_post.assert_called_once()
        assert "Precondition failed" in mock_post.call_args.kwargs["data"]

    def test_sweep_dry_run(self, settings_file, media_env):
        create_test_file(os.path.join(media_env["library"], "tv", "e1.mkv"), size_bytes=KB)

        assert main(["sweep", "popular-sweep", "--dry-run", "--config", settings_file()]) == EXIT_OK

        assert not os.path.lexists(os.path.join(media_env["cache"], "tv", "e1.mkv"))

    def test_quick_monitor_prints_nothing(self, settings_file, capsys):
        assert main(["monitor", "--quick-stats", "--config", settings_file()]) == EXIT_OK
        assert capsys.readouterr().out == ""

    def test_full_monitor_prints_report(self, settings_file, capsys):
        assert main(["monitor", "--config", settings_file()]) == EXIT_OK
        assert "=== Media Cache Report ===" in capsys.readouterr().out

    @patch("builtins.input", return_value="n")
    def test_rollback_cancelled(self, mock_input, settings_file, media_env, capsys):
        link = _link(media_env, "tv", "a.mkv", 1)

        assert main(["rollback", "--config", settings_file()]) == EXIT_OK

        assert "Cancelled" in capsys.readouterr().out
        assert os.path.islink(link)

    @patch("mediacache.rollback.require_command", return_value="/usr/bin/crontab")
    @patch("mediacache.schedule.CronSchedule.remove", return_value=0)
    def test_rollback_with_yes(self, mock_remove, mock_require, settings_file, media_env):
        link = _link(media_env, "tv", "a.mkv", 1)

        assert main(["rollback", "--yes", "--config", settings_file()]) == EXIT_OK

        assert not os.path.lexists(link)
        mock_remove.assert_called_once()
