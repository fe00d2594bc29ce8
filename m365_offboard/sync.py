"""Directory delta-sync trigger run after on-premises changes."""
from __future__ import annotations

import logging
import shlex
import subprocess

from .config import SyncConfig

logger = logging.getLogger(__name__)


class DirectorySyncError(RuntimeError):
    """Raised when the configured sync command cannot be run to completion."""


def trigger_directory_sync(sync: SyncConfig) -> bool:
    """Run the configured sync command; returns ``False`` when none is configured."""

    if not sync.command:
        return False

    logger.info("Starting directory sync: %s", sync.command)
    try:
        subprocess.run(
            sync.command if sync.shell else shlex.split(sync.command),
            shell=sync.shell,
            timeout=sync.timeout,
            check=True,
        )
    except FileNotFoundError as exc:
        raise DirectorySyncError(f"Sync command not found: {exc}") from exc
    except subprocess.CalledProcessError as exc:
        raise DirectorySyncError(f"Sync command failed with exit code {exc.returncode}.") from exc
    except subprocess.TimeoutExpired as exc:
        raise DirectorySyncError(f"Sync command timed out after {sync.timeout}s.") from exc
    return True


__all__ = ["DirectorySyncError", "trigger_directory_sync"]
