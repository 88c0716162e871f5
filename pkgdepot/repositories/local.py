"""Repository served straight from the package index store and byte storage."""

import logging

from pkgdepot.errors import (
    DistributionFileNotFound,
    MetadataNotFound,
    ProjectNotFound,
    ReleaseNotFound,
)
from pkgdepot.index_store import PackageIndexStore
from pkgdepot.models import ByteSource, DistributionFile, ProjectDetail, RepositoryRecord
from pkgdepot.repositories.base import Repository
from pkgdepot.storage import Storage
from pkgdepot.utils import artifact_path, normalize_project_name

logger = logging.getLogger(__name__)


class LocalRepository(Repository):
    """Reads and writes its own rows of the index store and its own directory.

    Attributes:
        index_store: Package index store shared by all repositories
        storage: Byte storage shared by all repositories
        base_dir: Directory inside ``storage`` owned by this repository
    """

    def __init__(
        self,
        record: RepositoryRecord,
        index_store: PackageIndexStore,
        storage: Storage,
        base_dir: str | None = None,
    ) -> None:
        super().__init__(record)
        self.index_store = index_store
        self.storage = storage
        self.base_dir = base_dir or f"repositories/{record.id}"

    def artifact_path(self, project: str, version: str, filename: str) -> str:
        return artifact_path(self.base_dir, project, version, filename)

    def list_projects(self) -> list[str]:
        packages = self.index_store.list_packages(self.id)
        return sorted((p.name for p in packages), key=normalize_project_name)

    def get_project(self, name: str) -> ProjectDetail:
        project = self.index_store.get_project(self.id, name)
        if project is None:
            raise ProjectNotFound(self.name, name)
        return project

    def resolve_file(self, dist_file: DistributionFile) -> ByteSource | None:
        """Turn a file row into a byte source; ``path`` wins when its bytes exist."""
        if dist_file.path and self.storage.exists(dist_file.path):
            return ByteSource(
                filename=dist_file.filename,
                hashes=dict(dist_file.hashes),
                path=dist_file.path,
                storage=self.storage,
            )
        if dist_file.url:
            return ByteSource(
                filename=dist_file.filename,
                hashes=dict(dist_file.hashes),
                url=dist_file.url,
            )
        return None

    def get_distribution_file(self, project: str, version: str, filename: str) -> ByteSource:
        dist_file = self.index_store.get_distribution_file(self.id, project, version, filename)
        if dist_file is None:
            raise DistributionFileNotFound(self.name, project, version, filename)

        source = self.resolve_file(dist_file)
        if source is None:
            logger.warning(f"Bytes of {filename} missing from {self.name} at {dist_file.path}")
            raise DistributionFileNotFound(self.name, project, version, filename)
        return source

    def get_release_metadata(self, project: str, version: str) -> dict[str, str]:
        release = self.index_store.get_release(self.id, project, version)
        if release is None:
            raise ReleaseNotFound(self.name, project, version)
        if release.metadata is None:
            raise MetadataNotFound(self.name, project, version)
        return dict(release.metadata)

    def provision(self) -> None:
        self.storage.mkdir_all(self.base_dir)
        logger.info(f"Provisioned storage for {self.name} at {self.base_dir}")

    def destroy(self) -> None:
        removed = self.index_store.delete_repository(self.id)
        self.storage.delete_tree(self.base_dir)
        logger.info(f"Destroyed {self.name}: {removed} packages and {self.base_dir} removed")
