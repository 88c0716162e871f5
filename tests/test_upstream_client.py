"""Unit tests for the upstream simple index client."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from pkgdepot.errors import UpstreamError, UpstreamNotFound
from pkgdepot.upstream_client import JSON_CONTENT_TYPE, UpstreamClient

HTML_PAGE = """<!DOCTYPE html>
<html><body>
<h1>Links for widget</h1>
<a href="../../packages/widget-1.0.tar.gz#sha256=aaaa" data-requires-python="&gt;=3.8">widget-1.0.tar.gz</a><br/>
<a href="https://files.example/widget-2.0-py3-none-any.whl#sha256=bbbb">widget-2.0-py3-none-any.whl</a><br/>
<a href="https://files.example/widget-3.0.zip"></a>
<a>no href</a>
</body></html>
"""

JSON_PAGE = {
    "meta": {"api-version": "1.0"},
    "name": "widget",
    "files": [
        {
            "filename": "widget-1.0.tar.gz",
            "url": "../../packages/widget-1.0.tar.gz",
            "hashes": {"sha256": "aaaa"},
            "requires-python": ">=3.8",
        },
        {
            "filename": "widget-2.0-py3-none-any.whl",
            "url": "https://files.example/widget-2.0-py3-none-any.whl",
            "hashes": {},
        },
    ],
}


def _response(status_code=200, content_type="text/html", text="", json_data=None, url=None):
    response = MagicMock()
    response.status_code = status_code
    response.headers = {"Content-Type": content_type}
    response.text = text
    response.url = url
    response.json.return_value = json_data
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status_code} error")
    return response


class TestSession:
    def test_retry_adapter_is_mounted(self):
        client = UpstreamClient(max_retries=5)
        adapter = client.session.get_adapter("https://upstream.example/")
        assert adapter.max_retries.total == 5
        assert 503 in adapter.max_retries.status_forcelist


class TestFetchProjectIndex:
    def test_parses_html(self):
        client = UpstreamClient()
        url = "https://upstream.example/simple/widget/"
        with patch.object(client.session, "get", return_value=_response(text=HTML_PAGE, url=url)):
            files = client.fetch_project_index(url)

        assert [f.filename for f in files] == [
            "widget-1.0.tar.gz",
            "widget-2.0-py3-none-any.whl",
            "widget-3.0.zip",
        ]
        assert files[0].url == "https://upstream.example/packages/widget-1.0.tar.gz"
        assert files[0].hashes == {"sha256": "aaaa"}
        assert files[0].requires_python == ">=3.8"
        assert files[1].requires_python is None
        assert files[2].hashes == {}

    def test_parses_json(self):
        client = UpstreamClient()
        url = "https://upstream.example/simple/widget/"
        response = _response(content_type=JSON_CONTENT_TYPE, json_data=JSON_PAGE, url=url)
        with patch.object(client.session, "get", return_value=response) as mock_get:
            files = client.fetch_project_index(url)

        assert JSON_CONTENT_TYPE in mock_get.call_args.kwargs["headers"]["Accept"]
        assert files[0].url == "https://upstream.example/packages/widget-1.0.tar.gz"
        assert files[0].requires_python == ">=3.8"
        assert files[1].hashes == {}

    def test_not_found(self):
        client = UpstreamClient()
        with patch.object(client.session, "get", return_value=_response(status_code=404)):
            with pytest.raises(UpstreamNotFound):
                client.fetch_project_index("https://upstream.example/simple/nope/")

    def test_server_error(self):
        client = UpstreamClient()
        with patch.object(client.session, "get", return_value=_response(status_code=500)):
            with pytest.raises(UpstreamError) as exc_info:
                client.fetch_project_index("https://upstream.example/simple/widget/")

        assert exc_info.value.status_code == 500

    def test_connection_error(self):
        client = UpstreamClient()
        with patch.object(client.session, "get", side_effect=requests.ConnectionError("refused")):
            with pytest.raises(UpstreamError):
                client.fetch_project_index("https://upstream.example/simple/widget/")

    def test_timeout_uses_override(self):
        client = UpstreamClient(timeout=30)
        with patch.object(client.session, "get", return_value=_response(text="")) as mock_get:
            client.fetch_project_index("https://upstream.example/simple/widget/", timeout=2)

        assert mock_get.call_args.kwargs["timeout"] == 2

    def test_malformed_json(self):
        client = UpstreamClient()
        response = _response(content_type=JSON_CONTENT_TYPE, json_data={"unexpected": True})
        with patch.object(client.session, "get", return_value=response):
            with pytest.raises(UpstreamError):
                client.fetch_project_index("https://upstream.example/simple/widget/")


class TestFetchFile:
    def test_streams_chunks_and_closes(self):
        client = UpstreamClient()
        response = _response()
        response.iter_content.return_value = iter([b"ab", b"", b"cd"])
        with patch.object(client.session, "get", return_value=response) as mock_get:
            chunks = list(client.fetch_file("https://files.example/widget-1.0.tar.gz"))

        assert chunks == [b"ab", b"cd"]
        assert mock_get.call_args.kwargs["stream"] is True
        response.close.assert_called_once()

    def test_not_found_is_raised_before_iteration(self):
        client = UpstreamClient()
        with patch.object(client.session, "get", return_value=_response(status_code=404)):
            with pytest.raises(UpstreamNotFound):
                client.fetch_file("https://files.example/missing.tar.gz")

    def test_interrupted_download(self):
        client = UpstreamClient()
        response = _response()

        def broken(chunk_size):
            yield b"ab"
            raise requests.ConnectionError("reset")

        response.iter_content.side_effect = broken
        with patch.object(client.session, "get", return_value=response):
            chunks = client.fetch_file("https://files.example/widget-1.0.tar.gz")
            with pytest.raises(UpstreamError):
                list(chunks)

        response.close.assert_called_once()
