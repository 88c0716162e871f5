"""Proxy-cache repository in front of an upstream simple index."""

import logging
from collections.abc import Callable, Iterable, Iterator
from datetime import datetime

from pkgdepot.errors import (
    DistributionFileNotFound,
    InvalidArtifact,
    ProjectNotFound,
    StorageFailure,
    UpstreamError,
    UpstreamNotFound,
    UpstreamUnavailable,
)
from pkgdepot.locks import SingleFlight
from pkgdepot.models import (
    ByteSource,
    DistributionFile,
    Package,
    ProjectDetail,
    Release,
    RemoteConfig,
    RepositoryRecord,
    UpstreamFile,
)
from pkgdepot.repositories.base import Repository
from pkgdepot.repositories.local import LocalRepository
from pkgdepot.upstream_client import UpstreamClient
from pkgdepot.utils import (
    DEFAULT_HASH_ALGORITHM,
    new_hashers,
    normalize_project_name,
    staging_path,
    utcnow,
    verifiable_hashes,
    version_from_filename,
)

logger = logging.getLogger(__name__)


class RemoteRepository(Repository):
    """Serves an upstream registry through a private local cache.

    Reads are answered from the cache while it is fresh. A stale or missing
    entry is fetched from upstream, written to the cache, then served from it.
    When upstream cannot be reached the stale cache entry is served instead,
    and ``UpstreamUnavailable`` is raised only when there is nothing cached.
    Concurrent fetches of the same project or file share one upstream call.
    """

    def __init__(
        self,
        record: RepositoryRecord,
        cache: LocalRepository,
        upstream: UpstreamClient,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(record)
        if not isinstance(record.configuration, RemoteConfig):
            raise TypeError(f"{record.name} is not configured as a remote repository")
        self.config: RemoteConfig = record.configuration
        self.cache = cache
        self.upstream = upstream
        self._clock = clock
        self._flights = SingleFlight()

    @property
    def index_store(self):
        return self.cache.index_store

    @property
    def storage(self):
        return self.cache.storage

    def project_url(self, name: str) -> str:
        return f"{self.config.url.rstrip('/')}/{normalize_project_name(name)}/"

    def _is_fresh(self, package: Package | None) -> bool:
        if package is None or package.synced_at is None:
            return False
        age = (self._clock() - package.synced_at).total_seconds()
        return age < self.config.cache_ttl

    def list_projects(self) -> list[str]:
        # Only what has been cached; the upstream catalogue is not enumerated
        return self.cache.list_projects()

    def get_project(self, name: str) -> ProjectDetail:
        package = self.index_store.get_package(self.id, name)
        if self._is_fresh(package):
            logger.debug(f"Cache hit for {name} in {self.name}")
            return self.cache.get_project(name)

        key = ("project", normalize_project_name(name))
        return self._flights.do(key, lambda: self._refresh_project(name))

    def _refresh_project(self, name: str) -> ProjectDetail:
        # A previous flight may have refreshed the entry while this caller was checking
        package = self.index_store.get_package(self.id, name)
        if self._is_fresh(package):
            return self.cache.get_project(name)

        url = self.project_url(name)
        try:
            upstream_files = self.upstream.fetch_project_index(url, timeout=self.config.timeout)
        except UpstreamNotFound:
            if package is not None:
                logger.warning(f"Upstream no longer lists {name}; serving cached copy from {self.name}")
                return self.cache.get_project(name)
            raise ProjectNotFound(self.name, name)
        except UpstreamError as e:
            if package is not None:
                logger.warning(f"Upstream of {self.name} failed ({e}); serving stale {name}")
                return self.cache.get_project(name)
            raise UpstreamUnavailable(self.name, str(e)) from e

        releases = self._group_releases(name, upstream_files)
        if not releases and package is None:
            logger.info(f"Upstream lists no usable files for {name}")
            raise ProjectNotFound(self.name, name)

        self.index_store.record_project(self.id, name, releases, synced_at=self._clock())
        logger.info(f"Cached {len(releases)} releases of {name} in {self.name}")
        return self.cache.get_project(name)

    def _group_releases(self, name: str, upstream_files: list[UpstreamFile]) -> list[Release]:
        releases: dict[str, Release] = {}

        for upstream_file in upstream_files:
            version = version_from_filename(upstream_file.filename)
            if version is None:
                logger.debug(f"Skipping {upstream_file.filename}: no version in filename")
                continue

            try:
                dist_file = self._cache_entry(name, version, upstream_file)
            except InvalidArtifact as e:
                logger.warning(f"Skipping upstream file {upstream_file.filename!r}: {e}")
                continue

            release = releases.setdefault(version, Release(version=version))
            if upstream_file.requires_python:
                release.metadata = {
                    **(release.metadata or {}),
                    "Requires-Python": upstream_file.requires_python,
                }
            release.files.append(dist_file)

        return list(releases.values())

    def _cache_entry(self, name: str, version: str, upstream_file: UpstreamFile) -> DistributionFile:
        if self.config.cache_files:
            return DistributionFile(
                filename=upstream_file.filename,
                hashes=verifiable_hashes(upstream_file.hashes),
                path=self.cache.artifact_path(name, version, upstream_file.filename),
                origin_url=upstream_file.url,
            )
        return DistributionFile(
            filename=upstream_file.filename,
            hashes=verifiable_hashes(upstream_file.hashes),
            url=upstream_file.url,
        )

    def get_release_metadata(self, project: str, version: str) -> dict[str, str]:
        self.get_project(project)
        return self.cache.get_release_metadata(project, version)

    def get_distribution_file(self, project: str, version: str, filename: str) -> ByteSource:
        dist_file = self.index_store.get_distribution_file(self.id, project, version, filename)
        if dist_file is None:
            self.get_project(project)
            dist_file = self.index_store.get_distribution_file(self.id, project, version, filename)
            if dist_file is None:
                raise DistributionFileNotFound(self.name, project, version, filename)

        source = self.cache.resolve_file(dist_file)
        if source is not None:
            return source

        if not (dist_file.path and dist_file.origin_url):
            raise DistributionFileNotFound(self.name, project, version, filename)

        key = ("file", normalize_project_name(project), version, filename)
        return self._flights.do(key, lambda: self._fetch_file(project, version, dist_file))

    def _fetch_file(self, project: str, version: str, dist_file: DistributionFile) -> ByteSource:
        source = self.cache.resolve_file(dist_file)
        if source is not None:
            return source

        expected_hashes = verifiable_hashes(dist_file.hashes)
        hashers = new_hashers({DEFAULT_HASH_ALGORITHM} | set(expected_hashes))

        def hashed(chunks: Iterable[bytes]) -> Iterator[bytes]:
            for chunk in chunks:
                for hasher in hashers.values():
                    hasher.update(chunk)
                yield chunk

        staged = staging_path(dist_file.path)
        promoted = False
        try:
            try:
                chunks = self.upstream.fetch_file(dist_file.origin_url, timeout=self.config.timeout)
                size = self.storage.write(staged, hashed(chunks))
            except UpstreamNotFound as e:
                raise DistributionFileNotFound(self.name, project, version, dist_file.filename) from e
            except UpstreamError as e:
                raise UpstreamUnavailable(self.name, str(e)) from e

            for algorithm, expected in expected_hashes.items():
                if hashers[algorithm].hexdigest() != expected:
                    logger.error(f"Hash mismatch for {dist_file.filename} from {dist_file.origin_url}")
                    raise UpstreamUnavailable(
                        self.name, f"{algorithm} mismatch for {dist_file.filename}"
                    )

            self.storage.move(staged, dist_file.path)
            promoted = True
        finally:
            if not promoted:
                self._discard(staged)

        logger.info(f"Cached {dist_file.filename} ({size} bytes) in {self.name}")
        return ByteSource(
            filename=dist_file.filename,
            hashes=expected_hashes,
            path=dist_file.path,
            storage=self.storage,
        )

    def _discard(self, path: str) -> None:
        try:
            self.storage.delete(path)
        except StorageFailure as e:
            logger.error(f"Failed to remove {path} from the cache of {self.name}: {e}")

    def provision(self) -> None:
        self.cache.provision()

    def destroy(self) -> None:
        self.cache.destroy()

    def close(self) -> None:
        self.upstream.close()
