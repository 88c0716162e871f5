"""Aggregating repository: members are consulted in priority order."""

import logging
from collections.abc import Callable
from typing import TypeVar

from pkgdepot.errors import (
    DepotError,
    DistributionFileNotFound,
    MetadataNotFound,
    NotFoundError,
    ProjectNotFound,
    UpstreamUnavailable,
)
from pkgdepot.models import ByteSource, ProjectDetail, RepositoryRecord, VirtualConfig
from pkgdepot.repositories.base import Repository
from pkgdepot.utils import normalize_project_name

logger = logging.getLogger(__name__)

T = TypeVar("T")


class VirtualRepository(Repository):
    """Answers each read from the first member that can answer it.

    Members are looked up by name through ``resolve`` on every call, so a
    virtual repository always sees the current set of repositories. A member
    that fails for any reason other than not-found is skipped; if every member
    is skipped that way the read fails with ``UpstreamUnavailable``.

    Files and release metadata of a project come only from the member that
    answers ``get_project`` for it, never from a later member.
    """

    def __init__(self, record: RepositoryRecord, resolve: Callable[[str], Repository]) -> None:
        super().__init__(record)
        if not isinstance(record.configuration, VirtualConfig):
            raise TypeError(f"{record.name} is not configured as a virtual repository")
        self.config: VirtualConfig = record.configuration
        self._resolve = resolve

    @property
    def members(self) -> list[Repository]:
        return [self._resolve(name) for name in self.config.repositories]

    def _first_match(
        self,
        description: str,
        call: Callable[[Repository], T],
        missing: Callable[[], NotFoundError],
    ) -> T:
        faults = []
        for member in self.members:
            try:
                result = call(member)
            except NotFoundError:
                continue
            except DepotError as e:
                logger.warning(f"Member {member.name} of {self.name} failed on {description}: {e}")
                faults.append(f"{member.name}: {e}")
                continue

            logger.debug(f"{description} answered by {member.name} for {self.name}")
            return result

        if faults:
            raise UpstreamUnavailable(self.name, "; ".join(faults))
        raise missing()

    def list_projects(self) -> list[str]:
        seen: dict[str, str] = {}
        for member in self.members:
            try:
                names = member.list_projects()
            except DepotError as e:
                logger.warning(f"Skipping member {member.name} of {self.name} in listing: {e}")
                continue
            for name in names:
                seen.setdefault(normalize_project_name(name), name)

        return [seen[key] for key in sorted(seen)]

    def get_project(self, name: str) -> ProjectDetail:
        return self._first_match(
            f"project {name}",
            lambda member: member.get_project(name),
            lambda: ProjectNotFound(self.name, name),
        )

    def _owner(self, project: str) -> Repository:
        """The first member that has ``project``; it answers every read about it."""

        def owns(member: Repository) -> Repository:
            member.get_project(project)
            return member

        return self._first_match(
            f"owner of {project}",
            owns,
            lambda: ProjectNotFound(self.name, project),
        )

    def _from_owner(
        self,
        project: str,
        description: str,
        call: Callable[[Repository], T],
        missing: Callable[[], NotFoundError],
    ) -> T:
        try:
            owner = self._owner(project)
        except ProjectNotFound:
            raise missing() from None

        try:
            return call(owner)
        except NotFoundError:
            raise missing() from None
        except DepotError as e:
            logger.warning(f"Member {owner.name} of {self.name} failed on {description}: {e}")
            raise UpstreamUnavailable(self.name, f"{owner.name}: {e}") from e

    def get_distribution_file(self, project: str, version: str, filename: str) -> ByteSource:
        return self._from_owner(
            project,
            f"file {filename}",
            lambda member: member.get_distribution_file(project, version, filename),
            lambda: DistributionFileNotFound(self.name, project, version, filename),
        )

    def get_release_metadata(self, project: str, version: str) -> dict[str, str]:
        return self._from_owner(
            project,
            f"metadata of {project} {version}",
            lambda member: member.get_release_metadata(project, version),
            lambda: MetadataNotFound(self.name, project, version),
        )
