"""Tests for crontab scheduling and the media server mount.

Source: mediacache/schedule.py and mediacache/consumer.py. No real crontab
or docker is touched; subprocess.run is patched throughout.
"""

import json
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from mediacache.config import ConsumerConfig, ScheduleConfig
from mediacache.consumer import ConsumerMount
from mediacache.exceptions import PreconditionError
from mediacache.schedule import CRON_MARKER, CronSchedule


def _completed(stdout="", returncode=0, stderr=""):
    result = MagicMock()
    result.stdout = stdout
    result.stderr = stderr
    result.returncode = returncode
    return result


@pytest.fixture
def schedule():
    config = ScheduleConfig(
        schedules={"popular-sweep": "0 */6 * * *", "monitor": "*/5 * * * *"},
        command="/usr/bin/media-cache",
    )
    return CronSchedule(config)


# ============================================================================
# TestCronSchedule
# ============================================================================

@patch("mediacache.schedule.require_command", return_value="/usr/bin/crontab")
class TestCronSchedule:
    """Tests for installing and removing marked crontab lines."""

    def test_render_lines(self, mock_require, schedule):
        assert schedule.render_lines() == [
            f"*/5 * * * * /usr/bin/media-cache monitor --quick-stats {CRON_MARKER}:monitor",
            f"0 */6 * * * /usr/bin/media-cache sweep popular-sweep --scheduled {CRON_MARKER}:popular-sweep",
        ]

    @patch("mediacache.schedule.subprocess.run")
    def test_install_keeps_foreign_lines(self, mock_run, mock_require, schedule):
        existing = "0 3 * * * /usr/local/bin/backup\n" \
                   f"0 1 * * * /old/media-cache sweep recent-sweep {CRON_MARKER}:recent-sweep\n"
        mock_run.side_effect = [_completed(existing), _completed()]

        schedule.install()

        written = mock_run.call_args_list[1].kwargs["input"].splitlines()
        assert written[0] == "0 3 * * * /usr/local/bin/backup"
        assert written[1:] == schedule.render_lines()

    @patch("mediacache.schedule.subprocess.run")
    def test_install_twice_is_stable(self, mock_run, mock_require, schedule):
        installed = "\n".join(schedule.render_lines()) + "\n"
        mock_run.side_effect = [_completed(installed), _completed()]

        schedule.install()

        assert mock_run.call_args_list[1].kwargs["input"] == installed

    @patch("mediacache.schedule.subprocess.run")
    def test_empty_crontab(self, mock_run, mock_require, schedule):
        mock_run.return_value = _completed(returncode=1, stderr="no crontab for user")
        assert schedule.is_installed() is False
        assert schedule.installed_jobs() == {}

    @patch("mediacache.schedule.subprocess.run")
    def test_installed_jobs(self, mock_run, mock_require, schedule):
        mock_run.return_value = _completed("\n".join(schedule.render_lines()))
        assert sorted(schedule.installed_jobs()) == ["monitor", "popular-sweep"]
        assert schedule.is_installed() is True

    @patch("mediacache.schedule.subprocess.run")
    def test_remove(self, mock_run, mock_require, schedule):
        lines = ["MAILTO=ops"] + schedule.render_lines()
        mock_run.side_effect = [_completed("\n".join(lines)), _completed()]

        assert schedule.remove() == 2
        assert mock_run.call_args_list[1].kwargs["input"] == "MAILTO=ops\n"

    @patch("mediacache.schedule.subprocess.run")
    def test_remove_nothing_installed(self, mock_run, mock_require, schedule):
        mock_run.return_value = _completed("MAILTO=ops\n")

        assert schedule.remove() == 0
        assert mock_run.call_count == 1

    @patch("mediacache.schedule.subprocess.run")
    def test_write_failure(self, mock_run, mock_require, schedule):
        mock_run.side_effect = [_completed(""), _completed(returncode=1, stderr="permission denied")]
        with pytest.raises(RuntimeError, match="permission denied"):
            schedule.install()

    def test_missing_crontab(self, mock_require, schedule):
        mock_require.side_effect = PreconditionError("Required command not found: crontab")
        with pytest.raises(PreconditionError):
            schedule.is_installed()


# ============================================================================
# TestConsumerMount
# ============================================================================

@patch("mediacache.consumer.shutil.which", return_value="/usr/bin/docker")
class TestConsumerMount:
    """Tests for the docker-inspected mount state and the detach step."""

    def _mount(self, **kwargs):
        return ConsumerMount(ConsumerConfig(**kwargs), "/mnt/ssd/media-cache/")

    @patch("mediacache.consumer.subprocess.run")
    def test_attached_by_source(self, mock_run, mock_which):
        mounts = [{"Source": "/mnt/ssd/media-cache", "Destination": "/accel"}]
        mock_run.return_value = _completed(json.dumps(mounts))
        assert self._mount().is_attached() is True

    @patch("mediacache.consumer.subprocess.run")
    def test_attached_by_destination(self, mock_run, mock_which):
        mounts = [{"Source": "/elsewhere", "Destination": "/media-cache"}]
        mock_run.return_value = _completed(json.dumps(mounts))
        assert self._mount().is_attached() is True

    @patch("mediacache.consumer.subprocess.run")
    def test_not_attached(self, mock_run, mock_which):
        mock_run.return_value = _completed(json.dumps([{"Source": "/config", "Destination": "/config"}]))
        assert self._mount().is_attached() is False

    def test_unknown_without_docker(self, mock_which):
        mock_which.return_value = None
        assert self._mount().is_attached() is None

    @patch("mediacache.consumer.subprocess.run")
    def test_unknown_on_timeout(self, mock_run, mock_which):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="docker", timeout=15)
        assert self._mount().is_attached() is None

    @patch("mediacache.consumer.subprocess.run")
    def test_unknown_container(self, mock_run, mock_which):
        mock_run.return_value = _completed(returncode=1, stderr="No such object: jellyfin")
        assert self._mount().is_attached() is None

    def test_attach_instructions(self, mock_which):
        text = self._mount(container="media").attach_instructions()
        assert "/mnt/ssd/media-cache:/media-cache:ro" in text
        assert "'media'" in text

    @patch("mediacache.consumer.subprocess.run")
    def test_detach_confirmed(self, mock_run, mock_which):
        mock_run.return_value = _completed()
        mount = self._mount(detach_command=["docker", "compose", "up", "-d", "jellyfin"])

        assert mount.detach(lambda prompt: True) is True
        assert mock_run.call_args.args[0] == ["docker", "compose", "up", "-d", "jellyfin"]

    @patch("mediacache.consumer.subprocess.run")
    def test_detach_declined(self, mock_run, mock_which):
        mount = self._mount(detach_command=["true"])

        assert mount.detach(lambda prompt: False) is False
        mock_run.assert_not_called()

    @patch("mediacache.consumer.subprocess.run")
    def test_detach_without_command(self, mock_run, mock_which):
        assert self._mount().detach(lambda prompt: True) is False
        mock_run.assert_not_called()

    @patch("mediacache.consumer.subprocess.run")
    def test_detach_command_fails(self, mock_run, mock_which):
        mock_run.return_value = _completed(returncode=1, stderr="boom")
        assert self._mount(detach_command=["false"]).detach(lambda prompt: True) is False
