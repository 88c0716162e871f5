"""Ingestion pipeline: store an uploaded artifact and its index rows as one unit."""

import logging
from collections.abc import Iterable, Iterator
from typing import TYPE_CHECKING

from pkgdepot.errors import DuplicateArtifact, InvalidArtifact, StorageFailure
from pkgdepot.locks import KeyedLock
from pkgdepot.models import DistributionFile
from pkgdepot.utils import (
    DEFAULT_HASH_ALGORITHM,
    new_hashers,
    normalize_project_name,
    staging_path,
    utcnow,
    validate_path_component,
)

if TYPE_CHECKING:
    from pkgdepot.registry import RepositoryRegistry

logger = logging.getLogger(__name__)


def _chunks(content: bytes | Iterable[bytes]) -> Iterable[bytes]:
    if isinstance(content, (bytes, bytearray, memoryview)):
        return [bytes(content)]
    return content


class IngestionPipeline:
    """Accepts uploads into local repositories.

    Ingestions of the same (repository, project, version, filename) are
    serialized; any other ingestions run in parallel. An ingestion either
    leaves bytes and rows behind together or leaves nothing behind.
    """

    def __init__(self, registry: "RepositoryRegistry"):
        self.registry = registry
        self._locks = KeyedLock()

    def ingest(
        self,
        repository_name: str,
        project: str,
        version: str,
        filename: str,
        content: bytes | Iterable[bytes],
        hashes: dict[str, str] | None = None,
        metadata: dict[str, str] | None = None,
        overwrite: bool = False,
    ) -> DistributionFile:
        """Store one distribution file in a local repository.

        Args:
            repository_name: Local repository, or a virtual one with an upload target
            project: Project name in any spelling
            version: Release version
            filename: Distribution filename
            content: The bytes, whole or as an iterable of chunks
            hashes: Declared digests to verify, keyed by algorithm
            metadata: Release metadata to merge into the release
            overwrite: Replace an existing file of the same name

        Returns:
            The committed distribution file row

        Raises:
            RepositoryNotFound: If the repository does not exist
            RepositoryNotLocal: If the repository cannot accept uploads
            DuplicateArtifact: If the file exists and ``overwrite`` is False
            InvalidArtifact: If names are unusable or declared hashes do not match
            StorageFailure: If bytes or rows could not be persisted
        """
        repository = self.registry.upload_target(repository_name)

        if not project or not project.strip():
            raise InvalidArtifact("project name must not be empty")
        validate_path_component(version, "version")
        validate_path_component(filename, "filename")

        declared = {algorithm.lower(): digest.lower() for algorithm, digest in (hashes or {}).items()}
        hashers = new_hashers({DEFAULT_HASH_ALGORITHM} | set(declared))

        index_store = repository.index_store
        storage = repository.storage
        key = (repository.id, normalize_project_name(project), version, filename)

        with self._locks.hold(key):
            existing = index_store.get_distribution_file(repository.id, project, version, filename)
            if existing is not None and not overwrite:
                raise DuplicateArtifact(repository.name, project, version, filename)

            path = repository.artifact_path(project, version, filename)
            staged = staging_path(path)
            promoted = False

            def hashed() -> Iterator[bytes]:
                for chunk in _chunks(content):
                    for hasher in hashers.values():
                        hasher.update(chunk)
                    yield chunk

            try:
                size = storage.write(staged, hashed())
                computed = {name: hasher.hexdigest() for name, hasher in hashers.items()}

                mismatched = sorted(name for name, digest in declared.items() if computed[name] != digest)
                if mismatched:
                    logger.warning(f"Rejected {filename} for {repository.name}: {', '.join(mismatched)} mismatch")
                    raise InvalidArtifact(f"Declared {', '.join(mismatched)} of {filename} does not match its content")

                dist_file = DistributionFile(
                    filename=filename,
                    hashes=computed,
                    path=path,
                    size=size,
                    created_at=utcnow(),
                )

                try:
                    committed = index_store.commit_artifact(
                        repository.id,
                        project,
                        version,
                        dist_file,
                        metadata=metadata,
                        overwrite=overwrite,
                    )
                except DuplicateArtifact:
                    raise DuplicateArtifact(repository.name, project, version, filename) from None

                try:
                    storage.move(staged, path)
                except StorageFailure:
                    self._restore_row(index_store, repository.id, project, version, filename, existing)
                    raise
                promoted = True

            finally:
                if not promoted:
                    self._discard(storage, staged)

        logger.info(f"Ingested {filename} ({size} bytes) as {project} {version} into {repository.name}")
        return committed

    @staticmethod
    def _restore_row(index_store, repository_id, project, version, filename, existing) -> None:
        """Put the file row back the way it was before a failed ingestion."""
        try:
            if existing is None:
                index_store.remove_distribution_file(repository_id, project, version, filename)
            else:
                index_store.commit_artifact(repository_id, project, version, existing, overwrite=True)
        except StorageFailure as e:
            logger.error(f"Failed to restore index row of {filename} while rolling back: {e}")

    @staticmethod
    def _discard(storage, path: str) -> None:
        try:
            storage.delete(path)
        except StorageFailure as e:
            logger.error(f"Failed to remove {path} while rolling back: {e}")
