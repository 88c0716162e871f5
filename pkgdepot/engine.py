"""Engine facade consumed by the request layer and the command line."""

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from pkgdepot import index_builder
from pkgdepot.config import DepotSettings
from pkgdepot.dynamodb_index_store import DynamoDBIndexStore
from pkgdepot.index_store import MemoryIndexStore, PackageIndexStore
from pkgdepot.ingestion import IngestionPipeline
from pkgdepot.models import (
    ByteSource,
    DistributionFile,
    IndexDocument,
    ProjectDetail,
    RemoteConfig,
    RepositoryConfiguration,
    RepositoryRecord,
    RepositoryType,
)
from pkgdepot.registry import RepositoryRegistry
from pkgdepot.repository_store import RepositoryStore
from pkgdepot.storage import FilesystemStorage, S3Storage, Storage
from pkgdepot.upstream_client import UpstreamClient

logger = logging.getLogger(__name__)

INDEX_SNAPSHOT = "index.json"


def create_storage(settings: DepotSettings) -> Storage:
    if settings.storage_backend == "s3":
        return S3Storage(settings.s3_bucket, prefix=settings.s3_prefix, region=settings.region)
    return FilesystemStorage(settings.data_dir)


def create_index_store(settings: DepotSettings) -> PackageIndexStore:
    if settings.index_backend == "dynamodb":
        return DynamoDBIndexStore(table_name=settings.dynamodb_table, region=settings.region)
    return MemoryIndexStore(snapshot_path=Path(settings.data_dir) / INDEX_SNAPSHOT)


class DepotEngine:
    """Single entry point for reads, uploads and repository lifecycle.

    Reads are addressed by repository name and delegated to the repository;
    the ``*_document`` methods additionally render the result with the index
    builder. Use as a context manager, or call ``close`` when done.
    """

    def __init__(self, registry: RepositoryRegistry, base_url: str = "/pypi"):
        self.registry = registry
        self.base_url = base_url.rstrip("/")
        self.ingestion = IngestionPipeline(registry)

    @classmethod
    def from_settings(cls, settings: DepotSettings) -> "DepotEngine":
        """Build an engine with the backends named in ``settings`` and load all repositories."""
        logger.info(
            f"Starting engine with {settings.storage_backend} storage "
            f"and {settings.index_backend} index"
        )

        def upstream_factory(config: RemoteConfig) -> UpstreamClient:
            return UpstreamClient(
                timeout=config.timeout or settings.upstream_timeout,
                max_retries=settings.upstream_retries,
            )

        registry = RepositoryRegistry(
            RepositoryStore(settings.config_dir),
            create_index_store(settings),
            create_storage(settings),
            upstream_factory=upstream_factory,
        )
        registry.load()
        return cls(registry, base_url=settings.base_url)

    # Repository lifecycle

    def create_repository(
        self,
        name: str,
        repo_type: RepositoryType | str,
        package_type: str = "pypi",
        configuration: dict[str, Any] | RepositoryConfiguration | None = None,
        description: str = "",
        notes: str = "",
    ) -> RepositoryRecord:
        repository = self.registry.create(
            name, repo_type, package_type, configuration, description, notes
        )
        return repository.record

    def delete_repository(self, name: str) -> None:
        self.registry.delete(name)

    def get_repository(self, name: str) -> RepositoryRecord:
        return self.registry.get_record(name)

    def list_repositories(self) -> list[RepositoryRecord]:
        return [repository.record for repository in self.registry.list_repositories()]

    # Reads

    def list_projects(self, repository: str) -> list[str]:
        return self.registry.get(repository).list_projects()

    def get_project(self, repository: str, project: str) -> ProjectDetail:
        return self.registry.get(repository).get_project(project)

    def get_distribution_file(
        self, repository: str, project: str, version: str, filename: str
    ) -> ByteSource:
        return self.registry.get(repository).get_distribution_file(project, version, filename)

    def get_release_metadata(self, repository: str, project: str, version: str) -> dict[str, str]:
        return self.registry.get(repository).get_release_metadata(project, version)

    # Uploads

    def ingest(
        self,
        repository: str,
        project: str,
        version: str,
        filename: str,
        content: bytes | Iterable[bytes],
        hashes: dict[str, str] | None = None,
        metadata: dict[str, str] | None = None,
        overwrite: bool = False,
    ) -> DistributionFile:
        return self.ingestion.ingest(
            repository, project, version, filename, content,
            hashes=hashes, metadata=metadata, overwrite=overwrite,
        )

    # Rendered documents

    def simple_index(
        self, repository: str, accept: str | None = None, query_format: str | None = None
    ) -> IndexDocument:
        """Project listing of a repository in the negotiated format."""
        fmt = self._format(accept, query_format)
        names = self.list_projects(repository)
        return index_builder.render_project_list(repository, names, self.base_url, fmt)

    def project_page(
        self,
        repository: str,
        project: str,
        accept: str | None = None,
        query_format: str | None = None,
    ) -> IndexDocument:
        """Per-project listing of a repository in the negotiated format."""
        fmt = self._format(accept, query_format)
        detail = self.get_project(repository, project)
        return index_builder.render_project_page(repository, detail, self.base_url, fmt)

    def metadata_document(self, repository: str, project: str, version: str) -> IndexDocument:
        metadata = self.get_release_metadata(repository, project, version)
        return index_builder.render_metadata(metadata, repository, project, version)

    @staticmethod
    def _format(accept: str | None, query_format: str | None) -> str:
        if index_builder.wants_json(accept, query_format):
            return index_builder.FORMAT_JSON
        return index_builder.FORMAT_HTML

    def close(self) -> None:
        self.registry.close()

    def __enter__(self) -> "DepotEngine":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
