"""Index builder for rendering simple index documents.

Every function here is a pure transformation of data the repositories have
already produced; nothing in this module touches storage or the network.
"""

import html
import json
import logging
from dataclasses import dataclass, field
from urllib.parse import quote

from pkgdepot.errors import MetadataNotFound
from pkgdepot.models import IndexDocument, ProjectDetail
from pkgdepot.utils import normalize_project_name

logger = logging.getLogger(__name__)

HTML_CONTENT_TYPE = "text/html"
JSON_CONTENT_TYPE = "application/vnd.pypi.simple.v1+json"
METADATA_CONTENT_TYPE = "text/plain"
API_VERSION = "1.0"

FORMAT_HTML = "html"
FORMAT_JSON = "json"


@dataclass
class ProjectFileEntry:
    """One row of a per-project listing."""

    name: str
    version: str
    filename: str
    url: str
    hashes: dict[str, str] = field(default_factory=dict)
    requires_python: str | None = None
    metadata_url: str = ""


def wants_json(accept: str | None = None, query_format: str | None = None) -> bool:
    """Decide between the JSON and the HTML flavour of a simple index document.

    Args:
        accept: Value of the request's Accept header
        query_format: Value of a ``format`` query parameter

    Returns:
        True when JSON was asked for explicitly, False otherwise
    """
    if query_format:
        return query_format.strip().lower() == FORMAT_JSON
    return bool(accept) and JSON_CONTENT_TYPE in accept.lower()


def project_url(base_url: str, repository: str, project: str) -> str:
    return f"{base_url.rstrip('/')}/{quote(repository)}/simple/{normalize_project_name(project)}/"


def file_url(base_url: str, repository: str, project: str, version: str, filename: str) -> str:
    """Canonical URL under which the engine serves a distribution file."""
    parts = [quote(part, safe="") for part in (repository, normalize_project_name(project), version, filename)]
    return f"{base_url.rstrip('/')}/{parts[0]}/packages/{parts[1]}/{parts[2]}/{parts[3]}"


def metadata_url(file_location: str) -> str:
    return f"{file_location}/METADATA"


def requires_python(metadata: dict[str, str] | None) -> str | None:
    """Requires-Python value of a release metadata map, if any."""
    if not metadata:
        return None
    if "Requires-Python" in metadata:
        return metadata["Requires-Python"] or None
    for key, value in metadata.items():
        if key.lower() == "requires-python":
            return value or None
    return None


def build_project_files(
    repository: str, detail: ProjectDetail, base_url: str
) -> list[ProjectFileEntry]:
    """Flatten a project into file entries, releases in insertion order.

    A file with an external URL keeps it; every other file gets the canonical
    engine URL. The metadata anchor is always derived from that URL.
    """
    entries = []
    for release in detail.releases:
        python_requirement = requires_python(release.metadata)
        for dist_file in release.files:
            location = dist_file.url or file_url(
                base_url, repository, detail.name, release.version, dist_file.filename
            )
            entries.append(
                ProjectFileEntry(
                    name=detail.name,
                    version=release.version,
                    filename=dist_file.filename,
                    url=location,
                    hashes=dict(dist_file.hashes),
                    requires_python=python_requirement,
                    metadata_url=metadata_url(location),
                )
            )
    return entries


def render_project_list(
    repository: str, names: list[str], base_url: str, fmt: str = FORMAT_HTML
) -> IndexDocument:
    """Render the listing of every project in a repository.

    Args:
        repository: Name of the repository the listing is served from
        names: Project names as returned by ``list_projects``
        base_url: URL prefix of the engine
        fmt: "html" or "json"

    Returns:
        IndexDocument with the rendered listing
    """
    ordered = sorted(names, key=normalize_project_name)
    logger.debug(f"Rendering {fmt} project list of {repository} with {len(ordered)} projects")

    if fmt == FORMAT_JSON:
        payload = {
            "meta": {"api-version": API_VERSION, "_last-serial": 0},
            "projects": [{"name": name} for name in ordered],
        }
        return IndexDocument(json.dumps(payload), JSON_CONTENT_TYPE)

    lines = ["<!DOCTYPE html>", "<html>", "<head><title>Simple index</title></head>", "<body>"]
    for name in ordered:
        href = html.escape(project_url(base_url, repository, name))
        lines.append(f'<a href="{href}">{html.escape(name)}</a><br/>')
    lines.extend(["</body>", "</html>"])
    return IndexDocument("\n".join(lines) + "\n", HTML_CONTENT_TYPE)


def render_project_page(
    repository: str, detail: ProjectDetail, base_url: str, fmt: str = FORMAT_HTML
) -> IndexDocument:
    """Render the per-project listing of releases and files."""
    entries = build_project_files(repository, detail, base_url)
    logger.debug(f"Rendering {fmt} page for {detail.name} in {repository} with {len(entries)} files")

    if fmt == FORMAT_JSON:
        payload = {
            "meta": {"api-version": API_VERSION},
            "name": detail.name,
            "versions": detail.versions,
            "files": [
                {
                    "filename": entry.filename,
                    "version": entry.version,
                    "url": entry.url,
                    "hashes": entry.hashes,
                    "requires-python": entry.requires_python,
                    "dist-info-metadata": entry.metadata_url,
                }
                for entry in entries
            ],
        }
        return IndexDocument(json.dumps(payload), JSON_CONTENT_TYPE)

    title = html.escape(detail.name)
    lines = [
        "<!DOCTYPE html>",
        "<html>",
        f"<head><title>Links for {title}</title></head>",
        "<body>",
        f"<h1>Links for {title}</h1>",
    ]
    for release in detail.releases:
        lines.append(f"<h3>{html.escape(release.version)}</h3>")
        for entry in entries:
            if entry.version != release.version:
                continue
            href = entry.url
            if "sha256" in entry.hashes:
                href = f"{href}#sha256={entry.hashes['sha256']}"
            attributes = [f'href="{html.escape(href)}"']
            if entry.requires_python:
                attributes.append(f'data-requires-python="{html.escape(entry.requires_python)}"')
            attributes.append(f'data-dist-info-metadata="{html.escape(entry.metadata_url)}"')
            lines.append(f"<a {' '.join(attributes)}>{html.escape(entry.filename)}</a><br/>")
    lines.extend(["</body>", "</html>"])
    return IndexDocument("\n".join(lines) + "\n", HTML_CONTENT_TYPE)


def render_metadata(
    metadata: dict[str, str] | None, repository: str = "", project: str = "", version: str = ""
) -> IndexDocument:
    """Render release metadata as ``Key: Value`` lines in map order.

    Raises:
        MetadataNotFound: If the release has no metadata map at all
    """
    if metadata is None:
        raise MetadataNotFound(repository, project, version)

    content = "".join(f"{key}: {value}\n" for key, value in metadata.items())
    return IndexDocument(content, METADATA_CONTENT_TYPE)
