"""CachedArtifact ORM model.

Each record describes one downloaded file in the cache directory and the
digest it was verified against, which lets later fetches of the same URL
skip the transfer.
"""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from isorootfs.db import Base
from isorootfs.types import ArtifactState


class CachedArtifact(Base):
    """ORM model for files held in the download cache.

    Attributes:
        id: Primary key.
        url: Source URL (unique).
        cache_dir: Directory holding the file.
        filename: File name inside ``cache_dir`` (the URL basename).
        checksum: Hex digest of the file, if it was hashed.
        hash_algorithm: Algorithm of ``checksum``.
        verified: Whether ``checksum`` was checked against a manifest.
        size_bytes: Size of the file.
        state: Current state (pending, ready, broken).
        fetched_at: Timestamp of the last transfer.
        last_used_at: Timestamp of the last fetch served by this record.
    """

    __tablename__ = "cached_artifacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    url: Mapped[str] = mapped_column(
        String(2000), nullable=False, unique=True, index=True
    )
    cache_dir: Mapped[str] = mapped_column(String(1000), nullable=False)
    filename: Mapped[str] = mapped_column(String(500), nullable=False)

    # Verification
    checksum: Mapped[str | None] = mapped_column(String(128), nullable=True)
    hash_algorithm: Mapped[str | None] = mapped_column(String(20), nullable=True)
    verified: Mapped[bool] = mapped_column(nullable=False, default=False)
    size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # State management
    state: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ArtifactState.PENDING.value, index=True
    )

    # Usage tracking
    fetched_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def __repr__(self) -> str:
        """Return string representation of CachedArtifact."""
        return (
            f"<CachedArtifact(id={self.id}, url='{self.url}', "
            f"state='{self.state}')>"
        )

    def mark_ready(self) -> None:
        """Mark this artifact as fully downloaded."""
        self.state = ArtifactState.READY.value

    def mark_broken(self) -> None:
        """Mark this artifact as unusable."""
        self.state = ArtifactState.BROKEN.value

    def is_ready(self) -> bool:
        """Check if this artifact is ready for use."""
        return self.state == ArtifactState.READY.value


__all__ = ["CachedArtifact"]
