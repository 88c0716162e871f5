"""Error taxonomy for the package repository engine."""


class DepotError(Exception):
    """Base class for all engine errors."""


class NotFoundError(DepotError):
    """Something that was asked for does not exist."""


class RepositoryNotFound(NotFoundError):
    def __init__(self, repository: str):
        self.repository = repository
        super().__init__(f"Repository '{repository}' not found")


class ProjectNotFound(NotFoundError):
    def __init__(self, repository: str, project: str):
        self.repository = repository
        self.project = project
        super().__init__(f"Project '{project}' not found in repository '{repository}'")


class ReleaseNotFound(NotFoundError):
    def __init__(self, repository: str, project: str, version: str):
        self.repository = repository
        self.project = project
        self.version = version
        super().__init__(
            f"Release {project} {version} not found in repository '{repository}'"
        )


class DistributionFileNotFound(NotFoundError):
    def __init__(self, repository: str, project: str, version: str, filename: str):
        self.repository = repository
        self.project = project
        self.version = version
        self.filename = filename
        super().__init__(
            f"File '{filename}' of {project} {version} not found in repository '{repository}'"
        )


class MetadataNotFound(NotFoundError):
    def __init__(self, repository: str, project: str, version: str):
        self.repository = repository
        self.project = project
        self.version = version
        super().__init__(
            f"No metadata recorded for {project} {version} in repository '{repository}'"
        )


class UpstreamNotFound(NotFoundError):
    """The upstream registry answered that the resource does not exist."""

    def __init__(self, url: str):
        self.url = url
        super().__init__(f"Upstream resource not found: {url}")


class ConflictError(DepotError):
    """The operation would overwrite or duplicate existing state."""


class DuplicateArtifact(ConflictError):
    def __init__(self, repository: str, project: str, version: str, filename: str):
        self.repository = repository
        self.project = project
        self.version = version
        self.filename = filename
        super().__init__(
            f"File '{filename}' already exists for {project} {version} "
            f"in repository '{repository}'"
        )


class DuplicateRepository(ConflictError):
    def __init__(self, repository: str):
        self.repository = repository
        super().__init__(f"Repository '{repository}' already exists")


class RepositoryInUse(ConflictError):
    def __init__(self, repository: str, referenced_by: list[str]):
        self.repository = repository
        self.referenced_by = referenced_by
        super().__init__(
            f"Repository '{repository}' is a member of: {', '.join(referenced_by)}"
        )


class InvalidConfiguration(DepotError):
    """Repository configuration is missing or malformed."""

    def __init__(self, repository: str, message: str):
        self.repository = repository
        super().__init__(f"Invalid configuration for repository '{repository}': {message}")


class InvalidArtifact(DepotError):
    """Uploaded artifact cannot be accepted as given."""


class RepositoryNotLocal(DepotError):
    def __init__(self, repository: str, repository_type: str):
        self.repository = repository
        self.repository_type = repository_type
        super().__init__(
            f"Repository '{repository}' is {repository_type}; uploads need a local repository"
        )


class UpstreamError(DepotError):
    """Transport-level failure talking to an upstream registry."""

    def __init__(self, url: str, message: str, status_code: int | None = None):
        self.url = url
        self.status_code = status_code
        super().__init__(message)


class UpstreamUnavailable(DepotError):
    """Upstream could not answer and no cached copy can stand in."""

    def __init__(self, repository: str, message: str):
        self.repository = repository
        super().__init__(f"Upstream of repository '{repository}' unavailable: {message}")


class StorageFailure(DepotError):
    """Persisting or reading bytes or index rows failed."""
