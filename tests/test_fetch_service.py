"""Tests for the download cache service.

These tests verify Fetcher.fetch, cache reuse, locking and the
list/prune/info helpers against in-memory and file-backed SQLite.
"""

import hashlib
import threading
import time
from datetime import datetime, timezone
from pathlib import Path

import httpx
import pytest
import respx
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from isorootfs.config import Settings
from isorootfs.db import create_all_tables
from isorootfs.errors import DownloadError, HashMismatchError
from isorootfs.fetch.models import CachedArtifact
from isorootfs.fetch.service import (
    Fetcher,
    artifact_lock,
    cache_dir_for,
    get_cache_info,
    list_artifacts,
    open_fetcher,
    prune_artifacts,
)
from isorootfs.types import ArtifactState, url_basename

BASE = "http://example.test/images/"
IMAGE_URL = BASE + "foo-1.0.iso"
MANIFEST_URL = BASE + "SHA256SUMS"
IMAGE = b"ISO9660 image bytes"


@pytest.fixture
def engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_engine("sqlite:///:memory:", echo=False)
    create_all_tables(engine)
    return engine


@pytest.fixture
def session(engine):
    """Create a session for testing."""
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def mock_settings(tmp_path):
    """Create settings with temp directories."""
    return Settings(
        cache_dir=tmp_path / "cache",
        db_url="sqlite:///:memory:",
        offline=False,
    )


def manifest_for(*entries: tuple[str, bytes]) -> str:
    """Build a SHA256SUMS manifest body."""
    return "".join(
        f"{hashlib.sha256(content).hexdigest()}  {name}\n"
        for name, content in entries
    )


def get_record(session, url: str) -> CachedArtifact | None:
    """Fetch the cache record for a URL."""
    return (
        session.execute(select(CachedArtifact).where(CachedArtifact.url == url))
        .scalars()
        .first()
    )


class TestCacheLayout:
    """Tests for cache path helpers."""

    def test_url_basename(self):
        """Should strip query strings."""
        assert url_basename("http://example.test/a/foo.iso?x=1") == "foo.iso"

    def test_siblings_share_directory(self, tmp_path):
        """Files from one remote directory share a cache directory."""
        assert cache_dir_for(tmp_path, IMAGE_URL) == cache_dir_for(
            tmp_path, MANIFEST_URL
        )

    def test_different_directories(self, tmp_path):
        """Different remote directories get different cache directories."""
        assert cache_dir_for(tmp_path, IMAGE_URL) != cache_dir_for(
            tmp_path, "http://example.test/other/foo-1.0.iso"
        )

    def test_under_downloads(self, tmp_path):
        """Cache directories live under <root>/downloads."""
        assert cache_dir_for(tmp_path, IMAGE_URL).parent == tmp_path / "downloads"


class TestArtifactLock:
    """Tests for artifact_lock context manager."""

    def test_lock_creates_lock_file(self, tmp_path):
        """Should create lock file in .locks directory."""
        with artifact_lock(tmp_path, "abc123"):
            assert (tmp_path / ".locks" / "abc123.lock").exists()

    def test_lock_is_exclusive(self, tmp_path):
        """Should prevent concurrent access."""
        results: list[str] = []

        def worker(worker_id: int) -> None:
            with artifact_lock(tmp_path, "abc123"):
                results.append(f"start-{worker_id}")
                time.sleep(0.1)
                results.append(f"end-{worker_id}")

        thread1 = threading.Thread(target=worker, args=(1,))
        thread2 = threading.Thread(target=worker, args=(2,))

        thread1.start()
        time.sleep(0.01)
        thread2.start()

        thread1.join()
        thread2.join()

        assert results in (
            ["start-1", "end-1", "start-2", "end-2"],
            ["start-2", "end-2", "start-1", "end-1"],
        )

    def test_lock_with_timeout(self, tmp_path):
        """Should timeout when lock cannot be acquired."""
        acquired = threading.Event()
        released = threading.Event()

        def holder() -> None:
            with artifact_lock(tmp_path, "abc123"):
                acquired.set()
                released.wait(timeout=5)

        holder_thread = threading.Thread(target=holder)
        holder_thread.start()
        acquired.wait(timeout=1)

        try:
            with (
                pytest.raises(TimeoutError),
                artifact_lock(tmp_path, "abc123", timeout=0.1),
            ):
                pass
        finally:
            released.set()
            holder_thread.join()


class TestFetch:
    """Tests for Fetcher.fetch."""

    @respx.mock
    def test_fetch_without_manifest(self, session, mock_settings):
        """Should download into the cache and record an unverified file."""
        route = respx.get(IMAGE_URL).mock(
            return_value=httpx.Response(200, content=IMAGE)
        )

        with httpx.Client() as client:
            cache_dir = Fetcher(session, mock_settings, client).fetch(IMAGE_URL)

        assert route.call_count == 1
        assert cache_dir == cache_dir_for(mock_settings.cache_dir, IMAGE_URL)
        assert (cache_dir / "foo-1.0.iso").read_bytes() == IMAGE
        assert not list(cache_dir.glob("*.tmp"))

        record = get_record(session, IMAGE_URL)
        assert record is not None
        assert record.state == ArtifactState.READY.value
        assert record.verified is False
        assert record.checksum == hashlib.sha256(IMAGE).hexdigest()
        assert record.size_bytes == len(IMAGE)

    @respx.mock
    def test_fetch_with_manifest(self, session, mock_settings):
        """Should fetch the manifest first and verify the image against it."""
        manifest_route = respx.get(MANIFEST_URL).mock(
            return_value=httpx.Response(
                200, text=manifest_for(("foo-1.0.iso", IMAGE))
            )
        )
        image_route = respx.get(IMAGE_URL).mock(
            return_value=httpx.Response(200, content=IMAGE)
        )

        with httpx.Client() as client:
            cache_dir = Fetcher(session, mock_settings, client).fetch(
                IMAGE_URL, MANIFEST_URL, "sha256"
            )

        assert manifest_route.call_count == 1
        assert image_route.call_count == 1
        assert (cache_dir / "SHA256SUMS").exists()
        record = get_record(session, IMAGE_URL)
        assert record is not None
        assert record.verified is True
        assert record.hash_algorithm == "sha256"

    @respx.mock
    def test_verified_file_reused(self, session, mock_settings):
        """A file verified against the same digest is not downloaded again."""
        respx.get(MANIFEST_URL).mock(
            return_value=httpx.Response(
                200, text=manifest_for(("foo-1.0.iso", IMAGE))
            )
        )
        image_route = respx.get(IMAGE_URL).mock(
            return_value=httpx.Response(200, content=IMAGE)
        )

        with httpx.Client() as client:
            fetcher = Fetcher(session, mock_settings, client)
            fetcher.fetch(IMAGE_URL, MANIFEST_URL, "sha256")
            fetcher.fetch(IMAGE_URL, MANIFEST_URL, "sha256")

        assert image_route.call_count == 1
        record = get_record(session, IMAGE_URL)
        assert record is not None
        assert record.last_used_at is not None

    @respx.mock
    def test_changed_manifest_refetches(self, session, mock_settings):
        """A cached file whose digest no longer matches is downloaded again."""
        new_image = b"respun image"
        respx.get(IMAGE_URL).mock(
            side_effect=[
                httpx.Response(200, content=IMAGE),
                httpx.Response(200, content=new_image),
            ]
        )
        respx.get(MANIFEST_URL).mock(
            return_value=httpx.Response(
                200, text=manifest_for(("foo-1.0.iso", IMAGE))
            )
        )

        with httpx.Client() as client:
            fetcher = Fetcher(session, mock_settings, client)
            cache_dir = fetcher.fetch(IMAGE_URL, MANIFEST_URL, "sha256")
            (cache_dir / "SHA256SUMS").write_text(
                manifest_for(("foo-1.0.iso", new_image))
            )
            fetcher.fetch(IMAGE_URL, MANIFEST_URL, "sha256")

        assert (cache_dir / "foo-1.0.iso").read_bytes() == new_image

    @respx.mock
    def test_unverified_file_refreshed(self, session, mock_settings):
        """Files without a digest are downloaded on every fetch."""
        route = respx.get(IMAGE_URL).mock(
            return_value=httpx.Response(200, content=IMAGE)
        )

        with httpx.Client() as client:
            fetcher = Fetcher(session, mock_settings, client)
            fetcher.fetch(IMAGE_URL)
            fetcher.fetch(IMAGE_URL)

        assert route.call_count == 2

    @respx.mock
    def test_hash_mismatch(self, session, mock_settings):
        """Tampered bytes are rejected and never left in the cache."""
        respx.get(MANIFEST_URL).mock(
            return_value=httpx.Response(
                200, text=manifest_for(("foo-1.0.iso", IMAGE))
            )
        )
        respx.get(IMAGE_URL).mock(
            return_value=httpx.Response(200, content=b"tampered")
        )

        with httpx.Client() as client, pytest.raises(HashMismatchError) as exc_info:
            Fetcher(session, mock_settings, client).fetch(
                IMAGE_URL, MANIFEST_URL, "sha256"
            )

        assert exc_info.value.code == "hash_mismatch"
        cache_dir = cache_dir_for(mock_settings.cache_dir, IMAGE_URL)
        assert not (cache_dir / "foo-1.0.iso").exists()
        assert not list(cache_dir.glob("*.tmp"))
        record = get_record(session, IMAGE_URL)
        assert record is not None
        assert record.state == ArtifactState.BROKEN.value

    @respx.mock
    def test_manifest_without_entry(self, session, mock_settings):
        """A manifest that does not list the image stops before downloading."""
        respx.get(MANIFEST_URL).mock(
            return_value=httpx.Response(
                200, text=manifest_for(("bar-2.0.iso", IMAGE))
            )
        )
        image_route = respx.get(IMAGE_URL).mock(
            return_value=httpx.Response(200, content=IMAGE)
        )

        with httpx.Client() as client, pytest.raises(HashMismatchError) as exc_info:
            Fetcher(session, mock_settings, client).fetch(
                IMAGE_URL, MANIFEST_URL, "sha256"
            )

        assert exc_info.value.code == "checksum_not_found"
        assert image_route.call_count == 0

    @respx.mock
    def test_http_error_marks_broken(self, session, mock_settings):
        """Failed transfers raise DownloadError and mark the record broken."""
        respx.get(IMAGE_URL).mock(return_value=httpx.Response(503))

        with httpx.Client() as client, pytest.raises(DownloadError) as exc_info:
            Fetcher(session, mock_settings, client).fetch(IMAGE_URL)

        assert exc_info.value.code == "http_error"
        record = get_record(session, IMAGE_URL)
        assert record is not None
        assert record.state == ArtifactState.BROKEN.value

    def test_offline_mode_without_cache(self, session, tmp_path):
        """Offline mode refuses to download."""
        settings = Settings(cache_dir=tmp_path / "cache", offline=True)

        with pytest.raises(DownloadError) as exc_info:
            Fetcher(session, settings, httpx.Client()).fetch(IMAGE_URL)

        assert exc_info.value.code == "offline_mode"

    @respx.mock
    def test_offline_mode_serves_cache(self, session, tmp_path):
        """Offline mode serves files already in the cache."""
        route = respx.get(IMAGE_URL).mock(
            return_value=httpx.Response(200, content=IMAGE)
        )
        online = Settings(cache_dir=tmp_path / "cache")
        offline = Settings(cache_dir=tmp_path / "cache", offline=True)

        with httpx.Client() as client:
            Fetcher(session, online, client).fetch(IMAGE_URL)
            cache_dir = Fetcher(session, offline, client).fetch(IMAGE_URL)

        assert route.call_count == 1
        assert (cache_dir / "foo-1.0.iso").read_bytes() == IMAGE

    def test_owned_client_closed(self, session, mock_settings):
        """A fetcher closes the client it created."""
        with Fetcher(session, mock_settings) as fetcher:
            client = fetcher.client
        assert client.is_closed

    def test_borrowed_client_left_open(self, session, mock_settings):
        """A fetcher leaves a caller's client open."""
        client = httpx.Client()
        with Fetcher(session, mock_settings, client):
            pass
        assert not client.is_closed
        client.close()


class TestOpenFetcher:
    """Tests for open_fetcher."""

    @respx.mock
    def test_records_committed(self, tmp_path):
        """Records written through open_fetcher are committed on exit."""
        respx.get(IMAGE_URL).mock(return_value=httpx.Response(200, content=IMAGE))
        settings = Settings(
            cache_dir=tmp_path / "cache",
            db_url=f"sqlite:///{tmp_path}/db/test.db",
        )

        with open_fetcher(settings) as fetcher:
            fetcher.fetch(IMAGE_URL)

        engine = create_engine(settings.db_url)
        with sessionmaker(bind=engine)() as session:
            record = get_record(session, IMAGE_URL)
            assert record is not None
            assert record.is_ready()

    @respx.mock
    def test_failure_keeps_committed_records(self, tmp_path):
        """A failed fetch leaves earlier rows and its own broken mark."""
        respx.get(MANIFEST_URL).mock(
            return_value=httpx.Response(200, text=manifest_for(("foo-1.0.iso", IMAGE)))
        )
        respx.get(IMAGE_URL).mock(
            return_value=httpx.Response(200, content=b"tampered")
        )
        settings = Settings(
            cache_dir=tmp_path / "cache",
            db_url=f"sqlite:///{tmp_path}/db/test.db",
        )

        with pytest.raises(HashMismatchError), open_fetcher(settings) as fetcher:
            fetcher.fetch(IMAGE_URL, MANIFEST_URL, "sha256")

        engine = create_engine(settings.db_url)
        with sessionmaker(bind=engine)() as session:
            states = {
                url: get_record(session, url).state
                for url in (MANIFEST_URL, IMAGE_URL)
            }
        assert states == {
            MANIFEST_URL: ArtifactState.READY.value,
            IMAGE_URL: ArtifactState.BROKEN.value,
        }

    @respx.mock
    def test_pending_record_visible_during_transfer(self, tmp_path):
        """The pending row is committed before the bytes start moving."""
        settings = Settings(
            cache_dir=tmp_path / "cache",
            db_url=f"sqlite:///{tmp_path}/db/test.db",
        )
        seen: list[str | None] = []

        def serve(request):  # noqa: ARG001
            engine = create_engine(settings.db_url)
            with sessionmaker(bind=engine)() as other:
                record = get_record(other, IMAGE_URL)
                seen.append(record.state if record is not None else None)
            engine.dispose()
            return httpx.Response(200, content=IMAGE)

        respx.get(IMAGE_URL).mock(side_effect=serve)

        with open_fetcher(settings) as fetcher:
            fetcher.fetch(IMAGE_URL)

        assert seen == [ArtifactState.PENDING.value]


class TestListAndPrune:
    """Tests for list_artifacts and prune_artifacts."""

    @pytest.fixture
    def populated_db(self, session, tmp_path):
        """Create one ready and one broken record with files on disk."""
        for name, state in (("ready.iso", "ready"), ("broken.iso", "broken")):
            (tmp_path / name).write_bytes(b"x")
            session.add(
                CachedArtifact(
                    url=BASE + name,
                    cache_dir=str(tmp_path),
                    filename=name,
                    state=state,
                    fetched_at=datetime.now(timezone.utc),
                )
            )
        session.commit()
        return tmp_path

    def test_list_all(self, session, populated_db):  # noqa: ARG002
        """Should list every record ordered by URL."""
        urls = [a.url for a in list_artifacts(session)]
        assert urls == [BASE + "broken.iso", BASE + "ready.iso"]

    def test_list_by_state(self, session, populated_db):  # noqa: ARG002
        """Should filter by state."""
        artifacts = list_artifacts(session, state=ArtifactState.READY)
        assert [a.filename for a in artifacts] == ["ready.iso"]

    def test_prune_broken_only(self, session, populated_db):
        """Default prune removes only broken records and their files."""
        pruned = prune_artifacts(session)

        assert pruned == [BASE + "broken.iso"]
        assert not (populated_db / "broken.iso").exists()
        assert (populated_db / "ready.iso").exists()
        assert len(list_artifacts(session)) == 1

    def test_prune_all(self, session, populated_db):
        """Prune with broken_only=False removes everything."""
        pruned = prune_artifacts(session, broken_only=False)

        assert sorted(pruned) == [BASE + "broken.iso", BASE + "ready.iso"]
        assert list_artifacts(session) == []
        assert not any(Path(populated_db).glob("*.iso"))

    def test_prune_dry_run(self, session, populated_db):
        """Dry run reports without deleting."""
        pruned = prune_artifacts(session, dry_run=True)

        assert pruned == [BASE + "broken.iso"]
        assert (populated_db / "broken.iso").exists()
        assert len(list_artifacts(session)) == 2


class TestGetCacheInfo:
    """Tests for get_cache_info."""

    def test_cache_info_empty(self, mock_settings):
        """Should report zero size for a missing cache."""
        info = get_cache_info(mock_settings)

        assert info["cache_dir"] == str(mock_settings.cache_dir)
        assert info["total_size_bytes"] == 0
        assert info["exists"] is False

    def test_cache_info_with_files(self, mock_settings):
        """Should sum the sizes of downloaded files."""
        downloads = mock_settings.cache_dir / "downloads" / "abc"
        downloads.mkdir(parents=True)
        (downloads / "foo.iso").write_bytes(b"x" * 2048)

        info = get_cache_info(mock_settings)

        assert info["total_size_bytes"] == 2048
        assert info["total_size_human"] == "2.0 KB"
        assert info["exists"] is True
