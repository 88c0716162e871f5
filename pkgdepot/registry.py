"""Repository registry: the live set of repositories the engine serves."""

import logging
import threading
from collections.abc import Callable
from datetime import datetime
from typing import Any

from pkgdepot.errors import DepotError, RepositoryInUse, RepositoryNotFound, RepositoryNotLocal
from pkgdepot.index_store import PackageIndexStore
from pkgdepot.models import (
    RemoteConfig,
    RepositoryConfiguration,
    RepositoryRecord,
    RepositoryType,
    VirtualConfig,
)
from pkgdepot.repositories.base import Repository
from pkgdepot.repositories.local import LocalRepository
from pkgdepot.repositories.remote import RemoteRepository
from pkgdepot.repositories.virtual import VirtualRepository
from pkgdepot.repository_store import RepositoryStore
from pkgdepot.storage import Storage
from pkgdepot.upstream_client import UpstreamClient
from pkgdepot.utils import utcnow

logger = logging.getLogger(__name__)

UpstreamFactory = Callable[[RemoteConfig], UpstreamClient]


class RepositoryRegistry:
    """Owns the repository instances built from the repository store.

    ``load`` builds every configured repository and ``close`` releases them;
    in between, repositories are created and deleted through the registry so
    records, index rows and storage stay in step.

    Attributes:
        repository_store: Persisted repository records
        index_store: Package index shared by all repositories
        storage: Byte storage shared by all repositories
    """

    def __init__(
        self,
        repository_store: RepositoryStore,
        index_store: PackageIndexStore,
        storage: Storage,
        upstream_factory: UpstreamFactory | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository_store = repository_store
        self.index_store = index_store
        self.storage = storage
        self._upstream_factory = upstream_factory or (lambda config: UpstreamClient())
        self._clock = clock
        self._repositories: dict[str, Repository] = {}
        self._lock = threading.RLock()

    def load(self) -> list[Repository]:
        """Build a repository for every stored record.

        Raises:
            InvalidConfiguration: If a stored record is malformed
        """
        records = self.repository_store.load_all()
        with self._lock:
            for repository in self._repositories.values():
                repository.close()
            self._repositories = {record.name: self._build(record) for record in records}
        logger.info(f"Registry loaded {len(records)} repositories")
        return self.list_repositories()

    def _build(self, record: RepositoryRecord) -> Repository:
        if record.type is RepositoryType.LOCAL:
            return LocalRepository(record, self.index_store, self.storage)

        if record.type is RepositoryType.REMOTE:
            cache = LocalRepository(
                record, self.index_store, self.storage, base_dir=f"cache/{record.id}"
            )
            upstream = self._upstream_factory(record.configuration)
            return RemoteRepository(record, cache, upstream, clock=self._clock)

        return VirtualRepository(record, self.get)

    def create(
        self,
        name: str,
        repo_type: RepositoryType | str,
        package_type: str = "pypi",
        configuration: dict[str, Any] | RepositoryConfiguration | None = None,
        description: str = "",
        notes: str = "",
    ) -> Repository:
        """Create, provision and persist a repository.

        Validation happens before anything is written, so a rejected
        definition leaves no directory, rows or record behind.

        Raises:
            InvalidConfiguration: If the definition is malformed
            DuplicateRepository: If the name is taken
        """
        with self._lock:
            record = self.repository_store.new_record(
                name, repo_type, package_type, configuration, description, notes
            )
            repository = self._build(record)
            repository.provision()
            try:
                self.repository_store.add(record)
            except Exception:
                logger.error(f"Failed to save repository {name}; rolling back")
                repository.destroy()
                repository.close()
                raise
            self._repositories[name] = repository

        logger.info(f"Created {record.type.value} repository {name}")
        return repository

    def delete(self, name: str) -> None:
        """Delete a repository with all its packages and bytes.

        Raises:
            RepositoryNotFound: If there is no such repository
            RepositoryInUse: If a virtual repository lists it as a member
            StorageFailure: If packages or bytes could not be removed; the
                repository stays registered so the delete can be retried
        """
        with self._lock:
            repository = self.get(name)
            referenced_by = self.repository_store.referenced_by(name)
            if referenced_by:
                raise RepositoryInUse(name, referenced_by)

            try:
                repository.destroy()
            except DepotError as e:
                logger.error(f"Failed to destroy repository {name}; keeping its record: {e}")
                raise

            self.repository_store.remove(name)
            del self._repositories[name]
            repository.close()

        logger.info(f"Deleted repository {name}")

    def get(self, name: str) -> Repository:
        """Look up a repository by name.

        Raises:
            RepositoryNotFound: If there is no such repository
        """
        with self._lock:
            repository = self._repositories.get(name)
        if repository is None:
            raise RepositoryNotFound(name)
        return repository

    def get_record(self, name: str) -> RepositoryRecord:
        return self.get(name).record

    def list_repositories(self) -> list[Repository]:
        with self._lock:
            return [self._repositories[name] for name in sorted(self._repositories)]

    def upload_target(self, name: str) -> LocalRepository:
        """The local repository that receives uploads addressed to ``name``.

        Raises:
            RepositoryNotFound: If there is no such repository
            RepositoryNotLocal: If ``name`` is remote, or virtual without an upload target
        """
        repository = self.get(name)
        if isinstance(repository, VirtualRepository):
            config: VirtualConfig = repository.config
            if config.upload_target is None:
                raise RepositoryNotLocal(name, repository.type.value)
            logger.debug(f"Uploads to {name} go to {config.upload_target}")
            repository = self.get(config.upload_target)

        if not isinstance(repository, LocalRepository):
            raise RepositoryNotLocal(repository.name, repository.type.value)
        return repository

    def close(self) -> None:
        with self._lock:
            for repository in self._repositories.values():
                repository.close()
            self._repositories = {}
        self.index_store.close()
        logger.info("Registry closed")

    def __enter__(self) -> "RepositoryRegistry":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
