"""Unpack the root filesystem of a live ISO image.

The ISO9660 image is mounted read-only, the squashfs image inside it is
mounted read-only on top, and its contents replace the destination root
directory. Mount points live in a per-invocation arena directory.

Release order on every exit path: inner unmount, outer unmount, arena
removal. Failures during release are logged and reported as
``CleanupWarning`` objects; they never replace the extraction outcome.
A ``SyncError`` can leave a partially copied destination behind.
"""

from __future__ import annotations

import functools
import logging
import shutil
import tempfile
from collections.abc import Callable
from contextlib import ExitStack
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from isorootfs.config import get_settings
from isorootfs.errors import (
    CleanupWarning,
    DestinationError,
    MalformedImage,
    MountError,
    PipelineError,
    SyncError,
)
from isorootfs.extract.mount import Mounter, MountHandle
from isorootfs.extract.sync import sync_tree
from isorootfs.types import ExtractionResult, ExtractorState, PipelineStage

if TYPE_CHECKING:
    from isorootfs.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_SQUASHFS_PATH = "live/filesystem.squashfs"

OUTER_FSTYPE = "iso9660"
INNER_FSTYPE = "squashfs"


class MountBackend(Protocol):
    """Anything that can mount and unmount image files."""

    def mount(
        self,
        source: Path,
        mount_point: Path,
        fstype: str,
        options: tuple[str, ...] = ("ro",),
    ) -> MountHandle: ...

    def unmount(self, handle: MountHandle) -> None: ...


def clear_directory(path: Path) -> None:
    """Remove everything inside a directory, creating it if missing.

    Raises:
        DestinationError: If the path is not a usable directory or an entry
            cannot be removed.
    """
    context = {"path": str(path)}
    if path.resolve() == Path("/"):
        raise DestinationError(
            "Refusing to clear the filesystem root",
            code="unsafe_destination",
            stage=PipelineStage.EXTRACT,
            context=context,
        )
    if path.is_symlink() or (path.exists() and not path.is_dir()):
        raise DestinationError(
            f"Destination is not a directory: {path}",
            code="not_a_directory",
            stage=PipelineStage.EXTRACT,
            context=context,
        )

    try:
        path.mkdir(parents=True, exist_ok=True)
        for entry in path.iterdir():
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()
    except OSError as e:
        raise DestinationError(
            f"Failed removing contents of {path}: {e}",
            stage=PipelineStage.EXTRACT,
            context=context,
        ) from e


class Extractor:
    """Replace a root directory with the squashfs tree of an ISO image."""

    def __init__(
        self,
        work_dir: Path | None = None,
        mounter: MountBackend | None = None,
        syncer: Callable[[Path, Path], None] | None = None,
        squashfs_path: str = DEFAULT_SQUASHFS_PATH,
        settings: Settings | None = None,
    ) -> None:
        """Initialize Extractor.

        Args:
            work_dir: Parent directory for mount arenas.
            mounter: Mount backend (system mount/umount by default).
            syncer: Tree copy function (rsync by default).
            squashfs_path: Location of the nested image inside the ISO.
            settings: Application settings.
        """
        if settings is None:
            settings = get_settings()
        self.work_dir = (
            work_dir if work_dir is not None else settings.effective_work_dir()
        )
        self.mounter: MountBackend = (
            mounter if mounter is not None else Mounter(settings)
        )
        self.syncer: Callable[[Path, Path], None] = (
            syncer
            if syncer is not None
            else functools.partial(
                sync_tree,
                rsync_binary=settings.rsync_binary,
                timeout=settings.sync_timeout,
            )
        )
        self.squashfs_path = squashfs_path
        self.state = ExtractorState.INIT

    def extract(self, image_path: Path, rootfs_dir: Path) -> ExtractionResult:
        """Unpack an ISO image's root filesystem into rootfs_dir.

        Args:
            image_path: Downloaded ISO9660 image.
            rootfs_dir: Destination root directory; its contents are replaced.

        Returns:
            ExtractionResult with any cleanup warnings.

        Raises:
            MountError: If either image cannot be mounted.
            MalformedImage: If the ISO has no nested squashfs image.
            DestinationError: If the destination cannot be cleared.
            SyncError: If copying the tree fails.
        """
        self.state = ExtractorState.INIT
        warnings: list[CleanupWarning] = []

        try:
            with ExitStack() as stack:
                arena = self._create_arena()
                stack.callback(self._remove_arena, arena, warnings)
                iso_dir = arena / "iso"
                squashfs_dir = arena / "squashfs"

                outer = self.mounter.mount(image_path, iso_dir, OUTER_FSTYPE)
                stack.callback(self._release, outer, warnings)
                self.state = ExtractorState.OUTER_MOUNTED

                squashfs_image = iso_dir / self.squashfs_path
                if not squashfs_image.is_file():
                    raise MalformedImage(
                        f"{self.squashfs_path} not found in {image_path}",
                        stage=PipelineStage.EXTRACT,
                        context={"path": str(image_path)},
                    )

                inner = self.mounter.mount(squashfs_image, squashfs_dir, INNER_FSTYPE)
                stack.callback(self._release, inner, warnings)
                self.state = ExtractorState.INNER_MOUNTED

                clear_directory(rootfs_dir)
                self.state = ExtractorState.DESTINATION_CLEARED

                logger.info("Unpacking root image %s", squashfs_image)
                self._sync(squashfs_dir, rootfs_dir)
                self.state = ExtractorState.SYNCED

                self.state = ExtractorState.CLEANUP
        except PipelineError as e:
            self.state = ExtractorState.FAILED
            if e.stage is None:
                e.stage = PipelineStage.EXTRACT
            e.warnings.extend(warnings)
            logger.error("Extraction of %s failed: %s", image_path, e)
            raise

        self.state = ExtractorState.DONE
        logger.info("Extracted %s to %s", image_path.name, rootfs_dir)
        return ExtractionResult(
            rootfs_dir=rootfs_dir, state=self.state, warnings=warnings
        )

    def _create_arena(self) -> Path:
        try:
            self.work_dir.mkdir(parents=True, exist_ok=True)
            arena = Path(tempfile.mkdtemp(prefix="extract_", dir=self.work_dir))
        except OSError as e:
            raise MountError(
                f"Failed creating temporary directory in {self.work_dir}: {e}",
                code="workspace_error",
                stage=PipelineStage.EXTRACT,
                context={"path": str(self.work_dir)},
            ) from e

        try:
            (arena / "iso").mkdir()
            (arena / "squashfs").mkdir()
        except OSError as e:
            shutil.rmtree(arena, ignore_errors=True)
            raise MountError(
                f"Failed creating mount points in {arena}: {e}",
                code="workspace_error",
                stage=PipelineStage.EXTRACT,
                context={"path": str(arena)},
            ) from e
        return arena

    def _sync(self, source_dir: Path, rootfs_dir: Path) -> None:
        try:
            self.syncer(source_dir, rootfs_dir)
        except SyncError:
            raise
        except OSError as e:
            raise SyncError(
                f"Failed copying {source_dir} to {rootfs_dir}: {e}",
                stage=PipelineStage.EXTRACT,
                context={"path": str(source_dir), "destination": str(rootfs_dir)},
            ) from e

    def _release(self, handle: MountHandle, warnings: list[CleanupWarning]) -> None:
        try:
            self.mounter.unmount(handle)
        except MountError as e:
            logger.warning("Cleanup: %s", e)
            warnings.append(
                CleanupWarning(str(e), path=str(handle.mount_point))
            )

    def _remove_arena(self, arena: Path, warnings: list[CleanupWarning]) -> None:
        # rmdir only: a mount point that failed to unmount is never descended into
        for path in (arena / "squashfs", arena / "iso", arena):
            try:
                path.rmdir()
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning("Cleanup: failed removing %s: %s", path, e)
                warnings.append(
                    CleanupWarning(f"Failed removing {path}: {e}", path=str(path))
                )


__all__ = [
    "DEFAULT_SQUASHFS_PATH",
    "Extractor",
    "MountBackend",
    "clear_directory",
]
