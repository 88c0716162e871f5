"""Abstract base class for repository variants."""

from abc import ABC, abstractmethod

from pkgdepot.models import ByteSource, ProjectDetail, RepositoryRecord, RepositoryType


class Repository(ABC):
    """Capability set shared by local, remote and virtual repositories.

    Every variant answers the same four reads, so the index builder and the
    request layer never need to know how a repository is backed. Absent things
    are reported by raising a ``NotFoundError`` subclass.

    Attributes:
        record: Persisted configuration of this repository
    """

    def __init__(self, record: RepositoryRecord) -> None:
        self.record = record

    @property
    def id(self) -> str:
        return self.record.id

    @property
    def name(self) -> str:
        return self.record.name

    @property
    def type(self) -> RepositoryType:
        return self.record.type

    @abstractmethod
    def list_projects(self) -> list[str]:
        """Names of all visible projects, sorted by normalized name.

        Never fails because of missing data; an empty list is a valid answer.
        """

    @abstractmethod
    def get_project(self, name: str) -> ProjectDetail:
        """A project with its releases and files.

        Raises:
            ProjectNotFound: If the project is not visible here
        """

    @abstractmethod
    def get_distribution_file(self, project: str, version: str, filename: str) -> ByteSource:
        """Where to get the bytes of one distribution file.

        Raises:
            DistributionFileNotFound: If there is no such file
        """

    @abstractmethod
    def get_release_metadata(self, project: str, version: str) -> dict[str, str]:
        """The metadata map of a release.

        Raises:
            ReleaseNotFound: If there is no such release
            MetadataNotFound: If the release has no metadata
        """

    def provision(self) -> None:
        """Allocate backing resources when the repository is created."""

    def destroy(self) -> None:
        """Drop everything this repository owns when it is deleted."""

    def close(self) -> None:
        """Release runtime resources at shutdown."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"
