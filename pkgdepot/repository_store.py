"""Repository store: persisted repository records, one YAML file per repository."""

import logging
import os
import tempfile
import threading
import uuid
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any

import yaml

from pkgdepot.errors import DuplicateRepository, InvalidConfiguration, RepositoryNotFound
from pkgdepot.models import (
    LocalConfig,
    RemoteConfig,
    RepositoryConfiguration,
    RepositoryRecord,
    RepositoryType,
    VirtualConfig,
)
from pkgdepot.utils import REPOSITORY_NAME_PATTERN, utcnow

logger = logging.getLogger(__name__)

PACKAGE_TYPES = ("pypi",)

CONFIG_TYPES = {
    RepositoryType.LOCAL: LocalConfig,
    RepositoryType.REMOTE: RemoteConfig,
    RepositoryType.VIRTUAL: VirtualConfig,
}


def _reject_unknown(name: str, data: dict[str, Any], allowed: set[str]) -> None:
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise InvalidConfiguration(name, f"unknown configuration keys: {', '.join(unknown)}")


def parse_configuration(
    name: str, repo_type: RepositoryType, data: dict[str, Any] | None
) -> RepositoryConfiguration:
    """Turn a raw configuration mapping into the typed configuration of ``repo_type``.

    Args:
        name: Repository name, used in error messages
        repo_type: Type the configuration belongs to
        data: Raw mapping, e.g. as read from YAML

    Returns:
        LocalConfig, RemoteConfig or VirtualConfig

    Raises:
        InvalidConfiguration: If required keys are missing, values are malformed,
            or keys unknown to the type are present
    """
    data = dict(data or {})

    if repo_type is RepositoryType.LOCAL:
        _reject_unknown(name, data, set())
        return LocalConfig()

    if repo_type is RepositoryType.REMOTE:
        _reject_unknown(name, data, {"url", "cache_ttl", "cache_files", "timeout"})
        url = data.get("url")
        if not isinstance(url, str) or not url.startswith(("http://", "https://")):
            raise InvalidConfiguration(name, "remote repositories need an http(s) 'url'")

        cache_ttl = data.get("cache_ttl", 1800)
        if isinstance(cache_ttl, bool) or not isinstance(cache_ttl, int) or cache_ttl < 0:
            raise InvalidConfiguration(name, "'cache_ttl' must be a non-negative integer")

        cache_files = data.get("cache_files", True)
        if not isinstance(cache_files, bool):
            raise InvalidConfiguration(name, "'cache_files' must be true or false")

        timeout = data.get("timeout")
        if timeout is not None and (
            isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0
        ):
            raise InvalidConfiguration(name, "'timeout' must be a positive number")

        return RemoteConfig(
            url=url,
            cache_ttl=cache_ttl,
            cache_files=cache_files,
            timeout=float(timeout) if timeout is not None else None,
        )

    _reject_unknown(name, data, {"repositories", "upload_target"})
    members = data.get("repositories")
    if not isinstance(members, (list, tuple)) or not members:
        raise InvalidConfiguration(name, "virtual repositories need a non-empty 'repositories' list")
    if not all(isinstance(member, str) and member for member in members):
        raise InvalidConfiguration(name, "'repositories' must list repository names")
    if len(set(members)) != len(members):
        raise InvalidConfiguration(name, "'repositories' lists a member twice")

    upload_target = data.get("upload_target")
    if upload_target is not None and upload_target not in members:
        raise InvalidConfiguration(name, f"upload target '{upload_target}' is not a member")

    return VirtualConfig(repositories=tuple(members), upload_target=upload_target)


def parse_repository_type(name: str, value: Any) -> RepositoryType:
    try:
        return value if isinstance(value, RepositoryType) else RepositoryType(str(value).lower())
    except ValueError:
        raise InvalidConfiguration(name, f"unknown repository type: {value!r}") from None


def validate_repository_name(name: Any) -> str:
    """Check a repository name is usable in URLs and as a file name.

    Raises:
        InvalidConfiguration: If the name is malformed
    """
    if not isinstance(name, str) or not REPOSITORY_NAME_PATTERN.match(name):
        raise InvalidConfiguration(
            str(name),
            "name must start with a letter or digit and contain only letters, digits, '.', '_' or '-'",
        )
    return name


def record_from_dict(data: dict[str, Any]) -> RepositoryRecord:
    """Build a repository record from its persisted form.

    Raises:
        InvalidConfiguration: If any field is missing or malformed
    """
    name = validate_repository_name(data.get("name"))
    repo_type = parse_repository_type(name, data.get("type"))

    package_type = data.get("package_type", "pypi")
    if package_type not in PACKAGE_TYPES:
        raise InvalidConfiguration(name, f"unsupported package type: {package_type!r}")

    created_at = data.get("created_at")
    if isinstance(created_at, str):
        try:
            created_at = datetime.fromisoformat(created_at)
        except ValueError:
            raise InvalidConfiguration(name, f"malformed created_at: {created_at!r}") from None

    return RepositoryRecord(
        id=str(data.get("id") or uuid.uuid4().hex),
        name=name,
        type=repo_type,
        package_type=package_type,
        configuration=parse_configuration(name, repo_type, data.get("configuration")),
        description=data.get("description") or "",
        notes=data.get("notes") or "",
        created_at=created_at,
    )


class RepositoryStore:
    """Manages repository records.

    With a ``config_dir`` every record is kept in ``<config_dir>/<name>.yaml``;
    without one the records only live in memory.

    Attributes:
        config_dir: Directory holding one YAML file per repository, or None
    """

    def __init__(self, config_dir: str | Path | None = None) -> None:
        """Initialize RepositoryStore.

        Args:
            config_dir: Directory for the YAML files, None for an in-memory store
        """
        self.config_dir = Path(config_dir) if config_dir is not None else None
        self._records: dict[str, RepositoryRecord] = {}
        self._lock = threading.RLock()

    def _path(self, name: str) -> Path:
        return self.config_dir / f"{name}.yaml"

    def load_all(self) -> list[RepositoryRecord]:
        """Load every repository record from the config directory.

        Returns:
            Records sorted by name

        Raises:
            InvalidConfiguration: If a file is malformed or virtual members do not resolve
        """
        records: dict[str, RepositoryRecord] = {}
        if self.config_dir is not None and self.config_dir.is_dir():
            for yaml_file in sorted(self.config_dir.glob("*.yaml")):
                with open(yaml_file) as f:
                    data = yaml.safe_load(f) or {}
                if not isinstance(data, dict):
                    raise InvalidConfiguration(yaml_file.stem, f"{yaml_file} is not a mapping")

                record = record_from_dict(data)
                if record.name != yaml_file.stem:
                    raise InvalidConfiguration(
                        record.name, f"file {yaml_file.name} holds repository '{record.name}'"
                    )
                records[record.name] = record

        for record in records.values():
            self._validate_members(record, records)

        with self._lock:
            self._records = records
        logger.info(f"Loaded {len(records)} repository configurations")
        return self.list_records()

    def new_record(
        self,
        name: str,
        repo_type: RepositoryType | str,
        package_type: str,
        configuration: dict[str, Any] | RepositoryConfiguration | None,
        description: str = "",
        notes: str = "",
    ) -> RepositoryRecord:
        """Validate a repository definition and build its record without saving it.

        Raises:
            InvalidConfiguration: If the definition is malformed
            DuplicateRepository: If the name is taken
        """
        name = validate_repository_name(name)
        repo_type = parse_repository_type(name, repo_type)
        if package_type not in PACKAGE_TYPES:
            raise InvalidConfiguration(name, f"unsupported package type: {package_type!r}")

        if isinstance(configuration, (LocalConfig, RemoteConfig, VirtualConfig)):
            if not isinstance(configuration, CONFIG_TYPES[repo_type]):
                raise InvalidConfiguration(
                    name, f"{type(configuration).__name__} given for a {repo_type.value} repository"
                )
            configuration = asdict(configuration)
        parsed = parse_configuration(name, repo_type, configuration)

        record = RepositoryRecord(
            id=uuid.uuid4().hex,
            name=name,
            type=repo_type,
            package_type=package_type,
            configuration=parsed,
            description=description or "",
            notes=notes or "",
            created_at=utcnow(),
        )

        with self._lock:
            if name in self._records:
                raise DuplicateRepository(name)
            self._validate_members(record, {**self._records, name: record})
        return record

    def _validate_members(
        self, record: RepositoryRecord, records: dict[str, RepositoryRecord]
    ) -> None:
        if not isinstance(record.configuration, VirtualConfig):
            return

        for member in record.configuration.repositories:
            if member == record.name:
                raise InvalidConfiguration(record.name, "a virtual repository cannot contain itself")
            if member not in records:
                raise InvalidConfiguration(record.name, f"member repository '{member}' does not exist")

        target = record.configuration.upload_target
        if target is not None and records[target].type is not RepositoryType.LOCAL:
            raise InvalidConfiguration(record.name, f"upload target '{target}' is not a local repository")

        # Walk nested virtual members to rule out cycles
        stack = [(record.name, list(record.configuration.repositories))]
        visiting = {record.name}
        while stack:
            current, pending = stack[-1]
            if not pending:
                visiting.discard(current)
                stack.pop()
                continue
            member = records.get(pending.pop())
            if member is None or not isinstance(member.configuration, VirtualConfig):
                continue
            if member.name in visiting:
                raise InvalidConfiguration(record.name, f"cycle through virtual repository '{member.name}'")
            visiting.add(member.name)
            stack.append((member.name, list(member.configuration.repositories)))

    def add(self, record: RepositoryRecord) -> None:
        """Persist a new record.

        Raises:
            DuplicateRepository: If the name is taken
        """
        with self._lock:
            if record.name in self._records:
                raise DuplicateRepository(record.name)
            self._write(record)
            self._records[record.name] = record
        logger.info(f"Saved repository {record.name} ({record.type.value})")

    def _write(self, record: RepositoryRecord) -> None:
        if self.config_dir is None:
            return

        self.config_dir.mkdir(parents=True, exist_ok=True)
        target = self._path(record.name)
        fd, tmp_name = tempfile.mkstemp(dir=self.config_dir, prefix=f".{record.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                yaml.safe_dump(record.to_dict(), f, default_flow_style=False, sort_keys=False)
            os.replace(tmp_name, target)
        finally:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)

    def remove(self, name: str) -> RepositoryRecord:
        """Forget a record and delete its file.

        Raises:
            RepositoryNotFound: If there is no such repository
        """
        with self._lock:
            record = self.get(name)
            if self.config_dir is not None:
                self._path(name).unlink(missing_ok=True)
            del self._records[name]
        logger.info(f"Removed repository {name}")
        return record

    def get(self, name: str) -> RepositoryRecord:
        """Get the record of a repository.

        Raises:
            RepositoryNotFound: If there is no such repository
        """
        with self._lock:
            record = self._records.get(name)
        if record is None:
            raise RepositoryNotFound(name)
        return record

    def exists(self, name: str) -> bool:
        with self._lock:
            return name in self._records

    def list_records(self) -> list[RepositoryRecord]:
        with self._lock:
            return [self._records[name] for name in sorted(self._records)]

    def referenced_by(self, name: str) -> list[str]:
        """Names of virtual repositories that list ``name`` as a member."""
        return [
            record.name
            for record in self.list_records()
            if isinstance(record.configuration, VirtualConfig)
            and name in record.configuration.repositories
        ]
