"""Data models for the package repository engine."""

from collections.abc import Iterator
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from pkgdepot.storage import Storage


class RepositoryType(str, Enum):
    """Kind of backing a repository endpoint has."""

    LOCAL = "local"
    REMOTE = "remote"
    VIRTUAL = "virtual"


@dataclass(frozen=True)
class LocalConfig:
    """Configuration of a local repository. Nothing is required."""


@dataclass(frozen=True)
class RemoteConfig:
    """Configuration of a proxy-cache repository.

    Attributes:
        url: Base URL of the upstream simple index (e.g. https://pypi.org/simple)
        cache_ttl: Seconds a cached project listing is served without refetching
        cache_files: Store fetched bytes locally, or hand out the upstream URL
        timeout: Upstream request timeout in seconds, overrides the engine default
    """

    url: str
    cache_ttl: int = 1800
    cache_files: bool = True
    timeout: float | None = None


@dataclass(frozen=True)
class VirtualConfig:
    """Configuration of an aggregating repository.

    Attributes:
        repositories: Member repository names in priority order
        upload_target: Local member that receives uploads sent to this repository
    """

    repositories: tuple[str, ...]
    upload_target: str | None = None


RepositoryConfiguration = LocalConfig | RemoteConfig | VirtualConfig


@dataclass
class RepositoryRecord:
    """A named registry endpoint."""

    id: str
    name: str
    type: RepositoryType
    package_type: str
    configuration: RepositoryConfiguration
    description: str = ""
    notes: str = ""
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize the record for persistence."""
        configuration = asdict(self.configuration)
        if "repositories" in configuration:
            configuration["repositories"] = list(configuration["repositories"])

        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "package_type": self.package_type,
            "description": self.description,
            "notes": self.notes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "configuration": configuration,
        }


@dataclass
class DistributionFile:
    """One physical artifact of a release.

    Exactly one of ``path`` and ``url`` is used to retrieve the bytes; ``path``
    wins when it is set and the bytes exist. ``origin_url`` records where a
    cached copy was (or will be) fetched from and is never advertised.
    """

    filename: str
    hashes: dict[str, str] = field(default_factory=dict)
    url: str | None = None
    path: str | None = None
    origin_url: str | None = None
    size: int | None = None
    created_at: datetime | None = None


@dataclass
class Release:
    """One version of a package, with its files in insertion order."""

    version: str
    metadata: dict[str, str] | None = None
    files: list[DistributionFile] = field(default_factory=list)
    created_at: datetime | None = None


@dataclass
class Package:
    """A named project within one repository."""

    repository_id: str
    name: str
    synced_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class ProjectDetail:
    """A project together with its releases, ordered by insertion."""

    name: str
    releases: list[Release] = field(default_factory=list)

    @property
    def versions(self) -> list[str]:
        return [release.version for release in self.releases]

    def get_release(self, version: str) -> Release | None:
        for release in self.releases:
            if release.version == version:
                return release
        return None


@dataclass
class ByteSource:
    """Where the bytes of a distribution file can be obtained.

    Either a ``path`` inside ``storage`` or a ``url`` the caller should redirect to.
    """

    filename: str
    hashes: dict[str, str] = field(default_factory=dict)
    path: str | None = None
    url: str | None = None
    storage: "Storage | None" = field(default=None, repr=False, compare=False)

    @property
    def is_redirect(self) -> bool:
        return self.path is None

    def read(self) -> bytes:
        """Read the whole file from storage."""
        if self.path is None or self.storage is None:
            raise ValueError(f"{self.filename} is served by redirect to {self.url}")
        return self.storage.read(self.path)

    def iter_chunks(self, chunk_size: int = 65536) -> Iterator[bytes]:
        """Stream the file from storage."""
        if self.path is None or self.storage is None:
            raise ValueError(f"{self.filename} is served by redirect to {self.url}")
        return self.storage.iter_chunks(self.path, chunk_size)


@dataclass
class UpstreamFile:
    """A file entry as listed by an upstream simple index."""

    filename: str
    url: str
    hashes: dict[str, str] = field(default_factory=dict)
    requires_python: str | None = None


@dataclass
class IndexDocument:
    """A rendered protocol document ready to hand to the request layer."""

    content: str
    content_type: str
