"""Utility functions for the package repository engine."""

import hashlib
import re
import uuid
from datetime import UTC, datetime

from packaging.utils import (
    InvalidSdistFilename,
    InvalidWheelFilename,
    canonicalize_name,
    parse_sdist_filename,
    parse_wheel_filename,
)

from pkgdepot.errors import InvalidArtifact

REPOSITORY_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")

DEFAULT_HASH_ALGORITHM = "sha256"


def utcnow() -> datetime:
    return datetime.now(UTC)


def normalize_project_name(name: str) -> str:
    """Normalize a project name the way the simple index protocol does.

    Examples:
        >>> normalize_project_name("Foo_Bar")
        'foo-bar'
        >>> normalize_project_name("zope.interface")
        'zope-interface'
    """
    return canonicalize_name(name)


def parse_distribution_filename(filename: str) -> tuple[str, str] | None:
    """Split a wheel or sdist filename into its project name and version.

    Returns:
        (project, version), or None if the filename is not a recognised
        wheel (.whl) or sdist (.tar.gz, .zip) name.

    Examples:
        >>> parse_distribution_filename("widget-1.0.0.tar.gz")
        ('widget', '1.0.0')
        >>> parse_distribution_filename("widget-2.0-py3-none-any.whl")
        ('widget', '2.0')
    """
    try:
        if filename.endswith(".whl"):
            name, version, _, _ = parse_wheel_filename(filename)
        else:
            name, version = parse_sdist_filename(filename)
    except (InvalidWheelFilename, InvalidSdistFilename):
        return None
    return str(name), str(version)


def version_from_filename(filename: str) -> str | None:
    """Release version encoded in a wheel or sdist filename, or None."""
    parsed = parse_distribution_filename(filename)
    return parsed[1] if parsed else None


def validate_path_component(value: str, label: str) -> str:
    """Reject values that cannot be used as a single storage path segment.

    Raises:
        InvalidArtifact: If the value is empty, a dot segment, or contains separators
    """
    if not value or not value.strip():
        raise InvalidArtifact(f"{label} must not be empty")
    if value in (".", "..") or "/" in value or "\\" in value or "\x00" in value:
        raise InvalidArtifact(f"{label} is not a valid path component: {value!r}")
    return value


def artifact_path(base_dir: str, project: str, version: str, filename: str) -> str:
    """Storage path of a distribution file inside a repository's directory."""
    return "/".join(
        [
            base_dir.rstrip("/"),
            normalize_project_name(project),
            validate_path_component(version, "version"),
            validate_path_component(filename, "filename"),
        ]
    )


def is_supported_hash(algorithm: str) -> bool:
    """Whether digests of ``algorithm`` can be computed and compared.

    Examples:
        >>> is_supported_hash("SHA256")
        True
        >>> is_supported_hash("shake_128")
        False
    """
    name = algorithm.lower()
    # shake_* digests have no fixed length
    return name in hashlib.algorithms_guaranteed and not name.startswith("shake_")


def new_hashers(algorithms: set[str]) -> dict[str, "hashlib._Hash"]:
    """Create hash objects for the requested algorithms.

    Raises:
        InvalidArtifact: If an algorithm is not supported on every platform
            or has no fixed digest length
    """
    hashers = {}
    for algorithm in algorithms:
        name = algorithm.lower()
        if not is_supported_hash(name):
            raise InvalidArtifact(f"Unsupported hash algorithm: {algorithm}")
        hashers[name] = hashlib.new(name)
    return hashers


def verifiable_hashes(hashes: dict[str, str]) -> dict[str, str]:
    """The digests in ``hashes`` that can be checked, with lowercased keys and values."""
    return {
        algorithm.lower(): digest.lower()
        for algorithm, digest in hashes.items()
        if is_supported_hash(algorithm)
    }


def staging_path(path: str) -> str:
    """A unique sibling of ``path`` to hold bytes until they are committed."""
    parent, _, name = path.rpartition("/")
    staged = f".{name}.{uuid.uuid4().hex}.staging"
    return f"{parent}/{staged}" if parent else staged


def compute_hashes(data: bytes, algorithms: set[str] | None = None) -> dict[str, str]:
    """Hex digests of ``data`` for each algorithm (sha256 by default)."""
    hashers = new_hashers(algorithms or {DEFAULT_HASH_ALGORITHM})
    for hasher in hashers.values():
        hasher.update(data)
    return {name: hasher.hexdigest() for name, hasher in hashers.items()}
