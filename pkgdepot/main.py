"""Command line entry point for the package repository engine."""

import json
import logging
from pathlib import Path
from typing import List, Optional

import typer

from pkgdepot.config import DepotSettings, setup_logging
from pkgdepot.engine import DepotEngine
from pkgdepot.errors import DepotError
from pkgdepot.index_builder import FORMAT_HTML, FORMAT_JSON
from pkgdepot.utils import parse_distribution_filename

app = typer.Typer(help="Manage and query package repositories")
logger = logging.getLogger(__name__)


def _fail(error: Exception) -> None:
    typer.echo(f"Error: {error}", err=True)
    raise typer.Exit(code=1)


def _engine() -> DepotEngine:
    try:
        settings = DepotSettings.from_env()
    except ValueError as e:
        _fail(e)
    return DepotEngine.from_settings(settings)


def _parse_pairs(values: list[str], label: str) -> dict[str, str]:
    pairs = {}
    for value in values:
        key, sep, item = value.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"expected KEY=VALUE, got {value!r}", param_hint=label)
        pairs[key.strip()] = item.strip()
    return pairs


@app.callback()
def configure(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="DEBUG, INFO, WARNING or ERROR"),
) -> None:
    """Manage and query package repositories."""
    setup_logging(log_level)


@app.command()
def repos() -> None:
    """List configured repositories."""
    try:
        with _engine() as engine:
            for record in engine.list_repositories():
                line = f"{record.name}\t{record.type.value}\t{record.package_type}"
                if record.description:
                    line += f"\t{record.description}"
                typer.echo(line)
    except DepotError as e:
        _fail(e)


@app.command()
def create(
    name: str = typer.Argument(..., help="Repository name"),
    repo_type: str = typer.Option("local", "--type", help="local, remote or virtual"),
    package_type: str = typer.Option("pypi", "--package-type", help="Package type"),
    url: Optional[str] = typer.Option(None, "--url", help="Upstream simple index URL (remote)"),
    cache_ttl: Optional[int] = typer.Option(None, "--cache-ttl", help="Seconds to trust cached listings (remote)"),
    cache_files: bool = typer.Option(True, "--cache-files/--no-cache-files", help="Cache fetched files (remote)"),
    member: Optional[List[str]] = typer.Option(None, "--member", help="Member repository, in priority order (virtual)"),
    upload_target: Optional[str] = typer.Option(None, "--upload-target", help="Local member receiving uploads (virtual)"),
    description: str = typer.Option("", "--description", help="Short description"),
    notes: str = typer.Option("", "--notes", help="Free-form notes"),
) -> None:
    """Create a repository."""
    configuration: dict = {}
    if repo_type == "remote":
        configuration["url"] = url
        configuration["cache_files"] = cache_files
        if cache_ttl is not None:
            configuration["cache_ttl"] = cache_ttl
    elif repo_type == "virtual":
        configuration["repositories"] = member or []
        if upload_target:
            configuration["upload_target"] = upload_target

    try:
        with _engine() as engine:
            record = engine.create_repository(
                name, repo_type, package_type, configuration, description, notes
            )
    except DepotError as e:
        _fail(e)
    typer.echo(f"Created {record.type.value} repository {record.name}")


@app.command()
def delete(name: str = typer.Argument(..., help="Repository name")) -> None:
    """Delete a repository and everything stored in it."""
    try:
        with _engine() as engine:
            engine.delete_repository(name)
    except DepotError as e:
        _fail(e)
    typer.echo(f"Deleted repository {name}")


@app.command()
def projects(
    repository: str = typer.Argument(..., help="Repository name"),
    fmt: Optional[str] = typer.Option(None, "--format", help="Render the simple index as 'html' or 'json'"),
) -> None:
    """List the projects of a repository."""
    try:
        with _engine() as engine:
            if fmt:
                typer.echo(engine.simple_index(repository, query_format=fmt).content)
            else:
                for name in engine.list_projects(repository):
                    typer.echo(name)
    except DepotError as e:
        _fail(e)


@app.command()
def project(
    repository: str = typer.Argument(..., help="Repository name"),
    name: str = typer.Argument(..., help="Project name"),
    fmt: str = typer.Option(FORMAT_JSON, "--format", help="'html' or 'json'"),
) -> None:
    """Show the releases and files of a project."""
    try:
        with _engine() as engine:
            document = engine.project_page(repository, name, query_format=fmt)
    except DepotError as e:
        _fail(e)

    if fmt == FORMAT_HTML:
        typer.echo(document.content)
    else:
        typer.echo(json.dumps(json.loads(document.content), indent=2))


@app.command()
def metadata(
    repository: str = typer.Argument(..., help="Repository name"),
    name: str = typer.Argument(..., help="Project name"),
    version: str = typer.Argument(..., help="Release version"),
) -> None:
    """Print the METADATA document of a release."""
    try:
        with _engine() as engine:
            document = engine.metadata_document(repository, name, version)
    except DepotError as e:
        _fail(e)
    typer.echo(document.content, nl=False)


@app.command()
def upload(
    repository: str = typer.Argument(..., help="Local repository, or virtual with an upload target"),
    path: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True, help="Distribution file"),
    name: Optional[str] = typer.Option(None, "--project", help="Project name (default: from filename)"),
    version: Optional[str] = typer.Option(None, "--version", help="Release version (default: from filename)"),
    sha256: Optional[str] = typer.Option(None, "--sha256", help="Expected sha256 of the file"),
    meta: Optional[List[str]] = typer.Option(None, "--metadata", help="Release metadata as Key=Value"),
    overwrite: bool = typer.Option(False, "--overwrite", help="Replace an existing file of the same name"),
) -> None:
    """Upload a distribution file."""
    parsed = parse_distribution_filename(path.name)
    if (name is None or version is None) and parsed is None:
        raise typer.BadParameter(
            f"cannot derive project and version from {path.name}; pass --project and --version"
        )
    project_name = name or parsed[0]
    release_version = version or parsed[1]
    release_metadata = _parse_pairs(meta or [], "--metadata") or None

    try:
        with _engine() as engine, open(path, "rb") as f:
            dist_file = engine.ingest(
                repository,
                project_name,
                release_version,
                path.name,
                iter(lambda: f.read(65536), b""),
                hashes={"sha256": sha256} if sha256 else None,
                metadata=release_metadata,
                overwrite=overwrite,
            )
    except DepotError as e:
        _fail(e)
    typer.echo(f"Uploaded {dist_file.filename} sha256={dist_file.hashes['sha256']}")


@app.command()
def download(
    repository: str = typer.Argument(..., help="Repository name"),
    name: str = typer.Argument(..., help="Project name"),
    version: str = typer.Argument(..., help="Release version"),
    filename: str = typer.Argument(..., help="Distribution filename"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Where to write the file"),
) -> None:
    """Fetch a distribution file, or print its URL if it is served by redirect."""
    try:
        with _engine() as engine:
            source = engine.get_distribution_file(repository, name, version, filename)
            if source.is_redirect:
                typer.echo(source.url)
                return

            target = output or Path(filename)
            with open(target, "wb") as f:
                for chunk in source.iter_chunks():
                    f.write(chunk)
    except DepotError as e:
        _fail(e)
    typer.echo(f"Saved {filename} to {target}")


def main() -> None:
    """Main entry point for the pkgdepot CLI."""
    app()


if __name__ == "__main__":
    main()
