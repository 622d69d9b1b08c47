"""Mount primitives for read-only image filesystems.

Mounting shells out to mount(8) and umount(8), which take care of loop
device setup for regular files.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from isorootfs.config import get_settings
from isorootfs.errors import MountError
from isorootfs.types import PipelineStage

if TYPE_CHECKING:
    from isorootfs.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MountHandle:
    """An active mount created by ``Mounter.mount``.

    Attributes:
        source: Image file that was mounted.
        mount_point: Directory the filesystem is mounted on.
        fstype: Filesystem type passed to mount(8).
        options: Mount options.
    """

    source: Path
    mount_point: Path
    fstype: str
    options: tuple[str, ...] = ("ro",)


class Mounter:
    """Mount and unmount image files through the system tools."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings if settings is not None else get_settings()

    def mount(
        self,
        source: Path,
        mount_point: Path,
        fstype: str,
        options: tuple[str, ...] = ("ro",),
    ) -> MountHandle:
        """Mount an image file.

        Args:
            source: Image file to mount.
            mount_point: Existing directory to mount on.
            fstype: Filesystem type (e.g. 'iso9660', 'squashfs').
            options: Mount options.

        Returns:
            MountHandle describing the new mount.

        Raises:
            MountError: If mount(8) fails or cannot be run.
        """
        cmd = [
            self.settings.mount_binary,
            "-t",
            fstype,
            "-o",
            ",".join(options),
            str(source),
            str(mount_point),
        ]
        logger.debug("Mounting %s on %s (%s)", source, mount_point, fstype)
        context = {"path": str(source), "mount_point": str(mount_point)}
        self._run(cmd, f"Failed mounting {source}", "mount_failed", context)
        return MountHandle(
            source=source,
            mount_point=mount_point,
            fstype=fstype,
            options=tuple(options),
        )

    def unmount(self, handle: MountHandle) -> None:
        """Unmount a previously mounted filesystem.

        Raises:
            MountError: If umount(8) fails or cannot be run.
        """
        logger.debug("Unmounting %s", handle.mount_point)
        self._run(
            [self.settings.umount_binary, str(handle.mount_point)],
            f"Failed unmounting {handle.mount_point}",
            "unmount_failed",
            {"mount_point": str(handle.mount_point)},
        )

    def _run(
        self,
        cmd: list[str],
        message: str,
        code: str,
        context: dict[str, str],
    ) -> None:
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.settings.command_timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise MountError(
                f"{message}: timed out after {self.settings.command_timeout}s",
                code=code,
                stage=PipelineStage.EXTRACT,
                context=context,
            ) from e
        except OSError as e:
            raise MountError(
                f"{message}: {e}",
                code=code,
                stage=PipelineStage.EXTRACT,
                context=context,
            ) from e

        if result.returncode != 0:
            detail = result.stderr.strip() or f"exit code {result.returncode}"
            raise MountError(
                f"{message}: {detail}",
                code=code,
                stage=PipelineStage.EXTRACT,
                context=context,
            )


__all__ = ["MountHandle", "Mounter"]
