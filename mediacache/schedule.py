"""
Cron scheduling for media-cache.

Periodic runs are plain crontab lines. Each line this tool writes carries a
marker comment so install and remove only ever touch their own lines.
"""

import logging
import subprocess
from typing import Dict, List

from mediacache.config import JOB_MONITOR, ScheduleConfig
from mediacache.system_utils import require_command

CRON_MARKER = "# media-cache"


class CronSchedule:
    """Installs and removes the media-cache crontab lines."""

    def __init__(self, config: ScheduleConfig, timeout: float = 15):
        self.config = config
        self.timeout = timeout

    def job_command(self, job_name: str) -> str:
        if job_name == JOB_MONITOR:
            return f"{self.config.command} monitor --quick-stats"
        return f"{self.config.command} sweep {job_name} --scheduled"

    def render_lines(self) -> List[str]:
        return [
            f"{schedule} {self.job_command(job)} {CRON_MARKER}:{job}"
            for job, schedule in sorted(self.config.schedules.items())
        ]

    def _read(self) -> List[str]:
        require_command("crontab")
        result = subprocess.run(['crontab', '-l'], capture_output=True, text=True, timeout=self.timeout)
        if result.returncode != 0:
            # "no crontab for user" is an empty crontab
            return []
        return result.stdout.splitlines()

    def _write(self, lines: List[str]) -> None:
        content = "\n".join(lines) + "\n" if lines else ""
        result = subprocess.run(['crontab', '-'], input=content, capture_output=True, text=True,
                                timeout=self.timeout)
        if result.returncode != 0:
            raise RuntimeError(f"crontab update failed: {result.stderr.strip()}")

    @staticmethod
    def _is_ours(line: str) -> bool:
        return CRON_MARKER + ":" in line

    def is_installed(self) -> bool:
        return any(self._is_ours(line) for line in self._read())

    def installed_jobs(self) -> Dict[str, str]:
        """Map of job name to its installed crontab line."""
        jobs = {}
        for line in self._read():
            if self._is_ours(line):
                jobs[line.rsplit(CRON_MARKER + ":", 1)[1].strip()] = line
        return jobs

    def install(self) -> None:
        """Replace this tool's crontab lines with the configured schedules."""
        kept = [line for line in self._read() if not self._is_ours(line)]
        self._write(kept + self.render_lines())
        logging.info(f"Installed {len(self.config.schedules)} scheduled job(s)")

    def remove(self) -> int:
        """Remove this tool's crontab lines. Returns the number removed."""
        lines = self._read()
        kept = [line for line in lines if not self._is_ours(line)]
        removed = len(lines) - len(kept)
        if removed:
            self._write(kept)
        logging.info(f"Removed {removed} scheduled job(s)")
        return removed
