"""Unit tests for the index builder."""

import json

import pytest

from pkgdepot.errors import MetadataNotFound
from pkgdepot.index_builder import (
    HTML_CONTENT_TYPE,
    JSON_CONTENT_TYPE,
    build_project_files,
    file_url,
    render_metadata,
    render_project_list,
    render_project_page,
    requires_python,
    wants_json,
)
from pkgdepot.models import DistributionFile, ProjectDetail, Release

SHA = "ab" * 32


@pytest.fixture
def detail():
    return ProjectDetail(
        name="Foo_Bar",
        releases=[
            Release(
                version="2.0",
                metadata={"Requires-Python": ">=3.8"},
                files=[DistributionFile(filename="foo_bar-2.0.tar.gz", hashes={"sha256": SHA})],
            ),
            Release(
                version="1.0",
                files=[
                    DistributionFile(
                        filename="foo_bar-1.0-py3-none-any.whl",
                        url="https://files.example/foo_bar-1.0-py3-none-any.whl",
                    )
                ],
            ),
        ],
    )


class TestWantsJson:
    def test_query_parameter(self):
        assert wants_json(query_format="json")
        assert not wants_json(accept=JSON_CONTENT_TYPE, query_format="html")

    def test_accept_header(self):
        assert wants_json(accept=f"{JSON_CONTENT_TYPE}, text/html;q=0.1")
        assert not wants_json(accept="text/html")

    def test_default_is_html(self):
        assert not wants_json()


class TestUrls:
    def test_file_url_is_canonical_and_quoted(self):
        assert (
            file_url("/pypi/", "pypi-local", "Foo_Bar", "1.0", "foo bar.tar.gz")
            == "/pypi/pypi-local/packages/foo-bar/1.0/foo%20bar.tar.gz"
        )

    def test_requires_python_lookup_is_case_insensitive(self):
        assert requires_python({"requires-python": ">=3.9"}) == ">=3.9"
        assert requires_python({"Name": "x"}) is None
        assert requires_python(None) is None


class TestBuildProjectFiles:
    def test_entries(self, detail):
        entries = build_project_files("pypi-local", detail, "/pypi")

        assert [e.version for e in entries] == ["2.0", "1.0"]
        first, second = entries
        assert first.url == "/pypi/pypi-local/packages/foo-bar/2.0/foo_bar-2.0.tar.gz"
        assert first.metadata_url == first.url + "/METADATA"
        assert first.requires_python == ">=3.8"
        assert first.hashes == {"sha256": SHA}
        assert second.url == "https://files.example/foo_bar-1.0-py3-none-any.whl"
        assert second.metadata_url == second.url + "/METADATA"
        assert second.requires_python is None


class TestRenderProjectList:
    def test_html(self):
        document = render_project_list("pypi-local", ["zeta", "Alpha"], "/pypi")

        assert document.content_type == HTML_CONTENT_TYPE
        assert '<a href="/pypi/pypi-local/simple/alpha/">Alpha</a><br/>' in document.content
        assert document.content.index("Alpha") < document.content.index("zeta")

    def test_json(self):
        document = render_project_list("pypi-local", ["zeta", "Alpha"], "/pypi", "json")

        assert document.content_type == JSON_CONTENT_TYPE
        assert json.loads(document.content) == {
            "meta": {"api-version": "1.0", "_last-serial": 0},
            "projects": [{"name": "Alpha"}, {"name": "zeta"}],
        }

    def test_empty(self):
        payload = json.loads(render_project_list("r", [], "/pypi", "json").content)
        assert payload["projects"] == []

    def test_names_are_escaped(self):
        document = render_project_list("r", ["<script>"], "/pypi")
        assert "<script>" not in document.content


class TestRenderProjectPage:
    def test_json(self, detail):
        payload = json.loads(render_project_page("pypi-local", detail, "/pypi", "json").content)

        assert payload["meta"] == {"api-version": "1.0"}
        assert payload["name"] == "Foo_Bar"
        assert payload["versions"] == ["2.0", "1.0"]
        assert payload["files"][0] == {
            "filename": "foo_bar-2.0.tar.gz",
            "version": "2.0",
            "url": "/pypi/pypi-local/packages/foo-bar/2.0/foo_bar-2.0.tar.gz",
            "hashes": {"sha256": SHA},
            "requires-python": ">=3.8",
            "dist-info-metadata": "/pypi/pypi-local/packages/foo-bar/2.0/foo_bar-2.0.tar.gz/METADATA",
        }
        assert payload["files"][1]["requires-python"] is None

    def test_html(self, detail):
        content = render_project_page("pypi-local", detail, "/pypi").content

        assert "<h1>Links for Foo_Bar</h1>" in content
        assert content.index("<h3>2.0</h3>") < content.index("<h3>1.0</h3>")
        assert f'href="/pypi/pypi-local/packages/foo-bar/2.0/foo_bar-2.0.tar.gz#sha256={SHA}"' in content
        assert 'data-requires-python="&gt;=3.8"' in content
        assert (
            'data-dist-info-metadata="https://files.example/foo_bar-1.0-py3-none-any.whl/METADATA"'
            in content
        )

    def test_virtual_repository_name_is_used(self, detail):
        payload = json.loads(render_project_page("all", detail, "/pypi", "json").content)
        assert payload["files"][0]["url"].startswith("/pypi/all/packages/")


class TestRenderMetadata:
    def test_lines_in_map_order(self):
        document = render_metadata({"Name": "widget", "Version": "1.0", "Summary": "A: widget"})
        assert document.content == "Name: widget\nVersion: 1.0\nSummary: A: widget\n"
        assert document.content_type == "text/plain"

    def test_empty_map_is_empty_document(self):
        assert render_metadata({}).content == ""

    def test_absent_map_is_not_found(self):
        with pytest.raises(MetadataNotFound):
            render_metadata(None, "pypi-local", "widget", "1.0")
