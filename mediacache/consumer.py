"""
Consumer media server mount handling.

The cache root is exposed to the media server container as a read-only bind
mount. Nothing here edits the media server's configuration: attaching is
left to the operator, and detaching runs an operator-supplied command only
after explicit confirmation.
"""

import json
import logging
import os
import shutil
import subprocess
from typing import Callable, Optional

from mediacache.config import ConsumerConfig


class ConsumerMount:
    """Inspects and (on request) detaches the cache mount of the media server."""

    def __init__(self, config: ConsumerConfig, cache_dir: str):
        self.config = config
        self.cache_dir = os.path.normpath(cache_dir)

    def is_attached(self) -> Optional[bool]:
        """Whether the container mounts the cache root.

        Returns:
            True or False, or None when it cannot be determined (docker
            missing, container unknown, inspect timed out).
        """
        if not shutil.which("docker"):
            logging.debug("docker not available, mount status unknown")
            return None

        try:
            result = subprocess.run(
                ['docker', 'inspect', '--format', '{{json .Mounts}}', self.config.container],
                capture_output=True, text=True, timeout=self.config.command_timeout
            )
        except subprocess.TimeoutExpired:
            logging.warning(f"docker inspect timed out after {self.config.command_timeout}s")
            return None
        except (subprocess.SubprocessError, OSError) as e:
            logging.debug(f"docker inspect failed: {type(e).__name__}: {e}")
            return None

        if result.returncode != 0:
            logging.debug(f"Container '{self.config.container}' not inspectable: {result.stderr.strip()}")
            return None

        try:
            mounts = json.loads(result.stdout or "[]") or []
        except json.JSONDecodeError:
            logging.debug(f"Unexpected docker inspect output: {result.stdout[:200]}")
            return None

        for mount in mounts:
            source = os.path.normpath(mount.get("Source", "") or "/")
            if source == self.cache_dir or mount.get("Destination") == self.config.mount_target:
                return True
        return False

    def attach_instructions(self) -> str:
        return "\n".join([
            f"Add this volume to the '{self.config.container}' container and recreate it:",
            f"  - {self.cache_dir}:{self.config.mount_target}:ro",
            f"Then add {self.config.mount_target} as an extra library folder in the media server.",
        ])

    def detach(self, confirm: Callable[[str], bool]) -> bool:
        """Run the configured detach command after the operator confirms.

        Args:
            confirm: Asked with a prompt; returning False skips the step.

        Returns:
            True if the detach command ran successfully.
        """
        if not self.config.detach_command:
            logging.warning("No detach_command configured; remove the cache volume from the "
                            f"'{self.config.container}' container manually")
            return False

        prompt = (f"Detaching will briefly make the accelerated path unavailable in "
                  f"'{self.config.container}'. Continue?")
        if not confirm(prompt):
            logging.info("Mount detach skipped by operator")
            return False

        logging.info(f"Running detach command: {' '.join(self.config.detach_command)}")
        try:
            result = subprocess.run(
                self.config.detach_command,
                capture_output=True, text=True, timeout=self.config.command_timeout
            )
        except subprocess.TimeoutExpired:
            logging.error(f"Detach command timed out after {self.config.command_timeout}s")
            return False
        except (subprocess.SubprocessError, OSError) as e:
            logging.error(f"Detach command failed: {type(e).__name__}: {e}")
            return False

        if result.returncode != 0:
            logging.error(f"Detach command exited with {result.returncode}: {result.stderr.strip()}")
            return False
        return True
