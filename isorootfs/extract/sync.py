"""Mirror a directory tree onto another with rsync."""

from __future__ import annotations

import logging
import shlex
import subprocess
from pathlib import Path

from isorootfs.errors import SyncError
from isorootfs.types import PipelineStage

logger = logging.getLogger(__name__)

# Archive mode plus hard links, ACLs, xattrs, sparse files and device nodes
RSYNC_ARGS = [
    "-aHAX",
    "--sparse",
    "--devices",
    "--numeric-ids",
    "--delete",
]


def compose_rsync_command(
    source_dir: Path,
    dest_dir: Path,
    rsync_binary: str = "rsync",
) -> list[str]:
    """Compose an rsync command copying the contents of source_dir.

    The trailing '/' on the source makes rsync copy the directory's
    contents rather than the directory itself.
    """
    return [rsync_binary, *RSYNC_ARGS, f"{source_dir}/", str(dest_dir)]


def sync_tree(
    source_dir: Path,
    dest_dir: Path,
    rsync_binary: str = "rsync",
    timeout: int | None = None,
) -> None:
    """Make dest_dir an exact copy of source_dir.

    Args:
        source_dir: Directory to copy from.
        dest_dir: Directory to copy into; extra files are deleted.
        rsync_binary: rsync executable.
        timeout: Timeout in seconds (None = no timeout).

    Raises:
        SyncError: If rsync fails or cannot be run.
    """
    cmd = compose_rsync_command(source_dir, dest_dir, rsync_binary)
    logger.debug("Running %s", shlex.join(cmd))
    context = {"path": str(source_dir), "destination": str(dest_dir)}

    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        raise SyncError(
            f"rsync timed out after {timeout}s copying {source_dir}",
            code="sync_timeout",
            stage=PipelineStage.EXTRACT,
            context=context,
        ) from e
    except OSError as e:
        raise SyncError(
            f"Failed to run {rsync_binary}: {e}",
            code="execution_error",
            stage=PipelineStage.EXTRACT,
            context=context,
        ) from e

    if result.returncode != 0:
        raise SyncError(
            f"rsync failed with exit code {result.returncode}: "
            f"{result.stderr.strip()}",
            stage=PipelineStage.EXTRACT,
            context=context,
        )


__all__ = ["RSYNC_ARGS", "compose_rsync_command", "sync_tree"]
