"""Shared fixtures: an engine over in-process backends and a fake upstream registry."""

from datetime import UTC, datetime, timedelta

import pytest

from pkgdepot.engine import DepotEngine
from pkgdepot.errors import UpstreamError, UpstreamNotFound
from pkgdepot.index_store import MemoryIndexStore
from pkgdepot.models import UpstreamFile
from pkgdepot.registry import RepositoryRegistry
from pkgdepot.repository_store import RepositoryStore
from pkgdepot.storage import FilesystemStorage
from pkgdepot.utils import compute_hashes, normalize_project_name

UPSTREAM_URL = "https://upstream.example/simple"
FILES_URL = "https://files.upstream.example/packages"


class FakeUpstream:
    """Stands in for UpstreamClient and records every call it receives."""

    def __init__(self, base_url: str = UPSTREAM_URL):
        self.base_url = base_url
        self.projects: dict[str, list[UpstreamFile]] = {}
        self.files: dict[str, bytes] = {}
        self.index_calls: list[str] = []
        self.file_calls: list[str] = []
        self.fail = False
        self.closed = False

    def project_url(self, project: str) -> str:
        return f"{self.base_url}/{normalize_project_name(project)}/"

    def add_file(
        self,
        project: str,
        filename: str,
        content: bytes,
        requires_python: str | None = None,
        hashes: dict[str, str] | None = None,
    ) -> UpstreamFile:
        url = f"{FILES_URL}/{filename}"
        upstream_file = UpstreamFile(
            filename=filename,
            url=url,
            hashes=compute_hashes(content) if hashes is None else hashes,
            requires_python=requires_python,
        )
        self.projects.setdefault(self.project_url(project), []).append(upstream_file)
        self.files[url] = content
        return upstream_file

    def fetch_project_index(self, url, timeout=None):
        self.index_calls.append(url)
        if self.fail:
            raise UpstreamError(url, f"connection refused: {url}")
        if url not in self.projects:
            raise UpstreamNotFound(url)
        return list(self.projects[url])

    def fetch_file(self, url, timeout=None):
        self.file_calls.append(url)
        if self.fail:
            raise UpstreamError(url, f"connection refused: {url}")
        if url not in self.files:
            raise UpstreamNotFound(url)
        content = self.files[url]
        return iter([content[:5], content[5:]])

    def close(self):
        self.closed = True


class FakeClock:
    """Controllable replacement for utcnow."""

    def __init__(self):
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self):
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def storage(tmp_path):
    return FilesystemStorage(tmp_path / "data")


@pytest.fixture
def index_store():
    return MemoryIndexStore()


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(tmp_path, storage, index_store, upstream, clock):
    registry = RepositoryRegistry(
        RepositoryStore(tmp_path / "repositories"),
        index_store,
        storage,
        upstream_factory=lambda config: upstream,
        clock=clock,
    )
    registry.load()
    yield registry
    registry.close()


@pytest.fixture
def engine(registry):
    return DepotEngine(registry, base_url="/pypi")


@pytest.fixture
def make_engine(tmp_path):
    """Factory for engines whose storage and config live in a fresh directory."""

    def _make(root=None, upstream=None, clock=None):
        root = root or tmp_path
        registry = RepositoryRegistry(
            RepositoryStore(root / "repositories"),
            MemoryIndexStore(),
            FilesystemStorage(root / "data"),
            upstream_factory=lambda config: upstream or FakeUpstream(),
            clock=clock or FakeClock(),
        )
        registry.load()
        return DepotEngine(registry, base_url="/pypi")

    return _make
