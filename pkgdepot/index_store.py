"""Package index store: packages, releases and distribution files per repository."""

import copy
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any

from pkgdepot.errors import DuplicateArtifact, StorageFailure
from pkgdepot.models import DistributionFile, Package, ProjectDetail, Release
from pkgdepot.utils import normalize_project_name, utcnow

logger = logging.getLogger(__name__)


def merge_metadata(
    current: dict[str, str] | None, update: dict[str, str] | None
) -> dict[str, str] | None:
    """Merge release metadata; keys in ``update`` win, ``None`` leaves it untouched."""
    if update is None:
        return current
    return {**(current or {}), **update}


class PackageIndexStore(ABC):
    """Persistence contract for the package index of every repository.

    Project names are matched in normalized form; the spelling used when the
    package row was created is kept for display. Releases and files come back
    in the order they were inserted.
    """

    @abstractmethod
    def list_packages(self, repository_id: str) -> list[Package]:
        """All packages of a repository."""

    @abstractmethod
    def get_package(self, repository_id: str, name: str) -> Package | None:
        """A single package, or None."""

    @abstractmethod
    def get_project(self, repository_id: str, name: str) -> ProjectDetail | None:
        """A package with its releases and their files, or None."""

    @abstractmethod
    def get_release(self, repository_id: str, name: str, version: str) -> Release | None:
        """A single release with its files, or None."""

    @abstractmethod
    def get_distribution_file(
        self, repository_id: str, name: str, version: str, filename: str
    ) -> DistributionFile | None:
        """A single distribution file, or None."""

    @abstractmethod
    def commit_artifact(
        self,
        repository_id: str,
        name: str,
        version: str,
        dist_file: DistributionFile,
        metadata: dict[str, str] | None = None,
        overwrite: bool = False,
    ) -> DistributionFile:
        """Atomically get-or-create the package and release and add the file.

        Release metadata is merged with ``metadata`` (new keys win) when given.

        Raises:
            DuplicateArtifact: If the file exists and ``overwrite`` is False
            StorageFailure: If the backend fails; nothing is written
        """

    @abstractmethod
    def remove_distribution_file(
        self, repository_id: str, name: str, version: str, filename: str
    ) -> None:
        """Drop a single file row if present."""

    @abstractmethod
    def record_project(
        self,
        repository_id: str,
        name: str,
        releases: list[Release],
        synced_at: datetime,
    ) -> None:
        """Merge a fetched project into the index and stamp its sync time.

        Missing packages and releases are created, release metadata is merged,
        files are added when their filename is new and left untouched otherwise.
        """

    @abstractmethod
    def delete_repository(self, repository_id: str) -> int:
        """Remove every package, release and file of a repository.

        Returns:
            Number of packages removed
        """

    def close(self) -> None:
        """Release backend resources."""


@dataclass
class _ReleaseRow:
    release: Release
    files: dict[str, DistributionFile] = field(default_factory=dict)

    def to_release(self) -> Release:
        return replace(
            copy.deepcopy(self.release),
            files=[copy.deepcopy(f) for f in self.files.values()],
        )


@dataclass
class _PackageRow:
    package: Package
    releases: dict[str, _ReleaseRow] = field(default_factory=dict)


SNAPSHOT_FIELDS = ("created_at", "synced_at")


def _json_default(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Cannot serialize {type(value).__name__}")


def _timestamps(data: dict[str, Any]) -> dict[str, Any]:
    for key in SNAPSHOT_FIELDS:
        if data.get(key):
            data[key] = datetime.fromisoformat(data[key])
    return data


class MemoryIndexStore(PackageIndexStore):
    """Thread-safe in-process index store.

    One lock guards all repositories; every mutation is applied in full while
    holding it, so readers never see half of an artifact commit.

    With a ``snapshot_path`` the whole index is rewritten to that JSON file
    after every mutation and read back on start-up. A failed write restores
    the last snapshot, so memory and disk never disagree.
    """

    def __init__(self, snapshot_path: str | Path | None = None) -> None:
        self._lock = threading.RLock()
        self._repositories: dict[str, dict[str, _PackageRow]] = {}
        self.snapshot_path = Path(snapshot_path) if snapshot_path is not None else None
        if self.snapshot_path is not None and self.snapshot_path.exists():
            self._load_snapshot()
        logger.info(f"Initialized MemoryIndexStore (snapshot: {self.snapshot_path or 'none'})")

    def _load_snapshot(self) -> None:
        try:
            with open(self.snapshot_path) as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise StorageFailure(f"Failed to read index snapshot {self.snapshot_path}: {e}") from e

        repositories: dict[str, dict[str, _PackageRow]] = {}
        for repository_id, packages in data.items():
            rows = repositories.setdefault(repository_id, {})
            for entry in packages:
                package_row = _PackageRow(Package(**_timestamps(entry["package"])))
                for release_entry in entry["releases"]:
                    release_row = _ReleaseRow(Release(**_timestamps(release_entry["release"])))
                    for file_entry in release_entry["files"]:
                        dist_file = DistributionFile(**_timestamps(file_entry))
                        release_row.files[dist_file.filename] = dist_file
                    package_row.releases[release_row.release.version] = release_row
                rows[normalize_project_name(package_row.package.name)] = package_row
        self._repositories = repositories

    def _snapshot(self) -> dict[str, Any]:
        return {
            repository_id: [
                {
                    "package": asdict(package_row.package),
                    "releases": [
                        {
                            "release": {
                                "version": row.release.version,
                                "metadata": row.release.metadata,
                                "created_at": row.release.created_at,
                            },
                            "files": [asdict(f) for f in row.files.values()],
                        }
                        for row in package_row.releases.values()
                    ],
                }
                for package_row in packages.values()
            ]
            for repository_id, packages in self._repositories.items()
        }

    def _persist(self) -> None:
        """Write the snapshot, or roll memory back to the previous one."""
        if self.snapshot_path is None:
            return

        tmp_name = None
        try:
            self.snapshot_path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.snapshot_path.parent, suffix=".tmp")
            with os.fdopen(fd, "w") as f:
                json.dump(self._snapshot(), f, default=_json_default)
            os.replace(tmp_name, self.snapshot_path)
        except OSError as e:
            logger.error(f"Failed to write index snapshot {self.snapshot_path}: {e}")
            if self.snapshot_path.exists():
                self._load_snapshot()
            else:
                self._repositories = {}
            raise StorageFailure(f"Failed to write index snapshot: {e}") from e
        finally:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)

    def _row(self, repository_id: str, name: str) -> _PackageRow | None:
        return self._repositories.get(repository_id, {}).get(normalize_project_name(name))

    def _ensure_release(
        self, repository_id: str, name: str, version: str, now: datetime
    ) -> tuple[_PackageRow, _ReleaseRow]:
        packages = self._repositories.setdefault(repository_id, {})
        key = normalize_project_name(name)
        package_row = packages.get(key)
        if package_row is None:
            package_row = _PackageRow(
                Package(repository_id=repository_id, name=name, created_at=now)
            )
            packages[key] = package_row
            logger.debug(f"Created package {name} in {repository_id}")

        release_row = package_row.releases.get(version)
        if release_row is None:
            release_row = _ReleaseRow(Release(version=version, created_at=now))
            package_row.releases[version] = release_row
            logger.debug(f"Created release {name} {version} in {repository_id}")

        return package_row, release_row

    def list_packages(self, repository_id: str) -> list[Package]:
        with self._lock:
            return [
                copy.deepcopy(row.package)
                for row in self._repositories.get(repository_id, {}).values()
            ]

    def get_package(self, repository_id: str, name: str) -> Package | None:
        with self._lock:
            row = self._row(repository_id, name)
            return copy.deepcopy(row.package) if row else None

    def get_project(self, repository_id: str, name: str) -> ProjectDetail | None:
        with self._lock:
            row = self._row(repository_id, name)
            if row is None:
                return None
            return ProjectDetail(
                name=row.package.name,
                releases=[r.to_release() for r in row.releases.values()],
            )

    def get_release(self, repository_id: str, name: str, version: str) -> Release | None:
        with self._lock:
            row = self._row(repository_id, name)
            if row is None or version not in row.releases:
                return None
            return row.releases[version].to_release()

    def get_distribution_file(
        self, repository_id: str, name: str, version: str, filename: str
    ) -> DistributionFile | None:
        with self._lock:
            row = self._row(repository_id, name)
            if row is None or version not in row.releases:
                return None
            dist_file = row.releases[version].files.get(filename)
            return copy.deepcopy(dist_file) if dist_file else None

    def commit_artifact(
        self,
        repository_id: str,
        name: str,
        version: str,
        dist_file: DistributionFile,
        metadata: dict[str, str] | None = None,
        overwrite: bool = False,
    ) -> DistributionFile:
        with self._lock:
            existing = self.get_distribution_file(
                repository_id, name, version, dist_file.filename
            )
            if existing is not None and not overwrite:
                raise DuplicateArtifact(repository_id, name, version, dist_file.filename)

            now = utcnow()
            _, release_row = self._ensure_release(repository_id, name, version, now)
            release_row.release.metadata = merge_metadata(
                release_row.release.metadata, metadata
            )

            stored = replace(copy.deepcopy(dist_file), created_at=dist_file.created_at or now)
            # Overwriting keeps the file's original position in the release
            release_row.files[stored.filename] = stored
            self._persist()

            logger.debug(f"Committed {name} {version} {stored.filename} in {repository_id}")
            return copy.deepcopy(stored)

    def remove_distribution_file(
        self, repository_id: str, name: str, version: str, filename: str
    ) -> None:
        with self._lock:
            row = self._row(repository_id, name)
            if row is not None and version in row.releases:
                row.releases[version].files.pop(filename, None)
                self._persist()

    def record_project(
        self,
        repository_id: str,
        name: str,
        releases: list[Release],
        synced_at: datetime,
    ) -> None:
        with self._lock:
            now = utcnow()
            package_row = None
            for release in releases:
                package_row, release_row = self._ensure_release(
                    repository_id, name, release.version, now
                )
                release_row.release.metadata = merge_metadata(
                    release_row.release.metadata, release.metadata
                )
                for dist_file in release.files:
                    if dist_file.filename not in release_row.files:
                        release_row.files[dist_file.filename] = replace(
                            copy.deepcopy(dist_file),
                            created_at=dist_file.created_at or now,
                        )

            if package_row is None:
                package_row = self._row(repository_id, name)
            if package_row is not None:
                package_row.package.synced_at = synced_at
            self._persist()

    def delete_repository(self, repository_id: str) -> int:
        with self._lock:
            removed = self._repositories.pop(repository_id, {})
            self._persist()
            logger.info(f"Removed {len(removed)} packages of repository {repository_id}")
            return len(removed)
