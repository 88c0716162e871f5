"""Client for fetching project pages and files from an upstream simple index."""

import json
import logging
from collections.abc import Iterator
from html.parser import HTMLParser
from pathlib import PurePosixPath
from typing import Any
from urllib.parse import unquote, urldefrag, urljoin, urlparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from pkgdepot.errors import UpstreamError, UpstreamNotFound
from pkgdepot.models import UpstreamFile

logger = logging.getLogger(__name__)

JSON_CONTENT_TYPE = "application/vnd.pypi.simple.v1+json"


class _ProjectPageParser(HTMLParser):
    """Collect file anchors from a simple index project page."""

    def __init__(self):
        super().__init__()
        self.anchors: list[dict[str, str]] = []
        self._current: dict[str, str] | None = None

    def handle_starttag(self, tag, attrs):
        if tag.lower() != "a":
            return
        attributes = {name: value or "" for name, value in attrs}
        if not attributes.get("href"):
            return
        self._current = {**attributes, "text": ""}

    def handle_data(self, data):
        if self._current is not None:
            self._current["text"] += data

    def handle_endtag(self, tag):
        if tag.lower() == "a" and self._current is not None:
            self.anchors.append(self._current)
            self._current = None


class UpstreamClient:
    """Fetches project indexes and distribution files from an upstream registry."""

    def __init__(self, timeout: float = 30, max_retries: int = 3):
        """Initialize the upstream client.

        Args:
            timeout: Request timeout in seconds
            max_retries: Maximum number of retry attempts
        """
        self.timeout = timeout
        self.max_retries = max_retries
        self.session = self._create_session()

    def _create_session(self) -> requests.Session:
        """Create a requests session with retry configuration."""
        session = requests.Session()

        # Configure retry strategy with exponential backoff
        retry_strategy = Retry(
            total=self.max_retries,
            backoff_factor=1,  # 1, 2, 4 seconds
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET"],
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)

        return session

    def _get(
        self,
        url: str,
        timeout: float | None,
        stream: bool = False,
        accept: str | None = None,
    ) -> requests.Response:
        headers = {"Accept": accept} if accept else {}

        try:
            response = self.session.get(
                url, timeout=timeout or self.timeout, stream=stream, headers=headers
            )
        except requests.RequestException as e:
            logger.error(f"Failed to fetch {url} after {self.max_retries} retries: {e}")
            raise UpstreamError(url, f"Failed to fetch {url}: {e}") from e

        if response.status_code == 404:
            response.close()
            logger.info(f"Upstream has no {url}")
            raise UpstreamNotFound(url)

        try:
            response.raise_for_status()
        except requests.HTTPError as e:
            response.close()
            logger.error(f"Upstream returned {response.status_code} for {url}")
            raise UpstreamError(
                url, f"Upstream returned {response.status_code} for {url}", response.status_code
            ) from e

        return response

    def fetch_project_index(self, url: str, timeout: float | None = None) -> list[UpstreamFile]:
        """Fetch and parse a project page of the upstream simple index.

        Args:
            url: URL of the project page (e.g. https://pypi.org/simple/widget/)
            timeout: Overrides the client timeout for this request

        Returns:
            File entries in the order the upstream lists them

        Raises:
            UpstreamNotFound: If the upstream has no such project
            UpstreamError: If the request fails or the page cannot be parsed
        """
        logger.info(f"Fetching project index from {url}")

        response = self._get(url, timeout, accept=f"{JSON_CONTENT_TYPE}, text/html;q=0.1")
        content_type = response.headers.get("Content-Type", "")
        base_url = response.url or url

        try:
            if "json" in content_type:
                files = self._parse_json_page(response.json(), base_url)
            else:
                files = self._parse_html_page(response.text, base_url)
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Failed to parse project index from {url}: {e}")
            logger.error(f"Response content: {response.text[:500]}...")
            raise UpstreamError(url, f"Unparseable project index at {url}: {e}") from e

        logger.info(f"Fetched {len(files)} file entries from {url} (status: {response.status_code})")
        return files

    def _parse_json_page(self, payload: dict[str, Any], base_url: str) -> list[UpstreamFile]:
        files = []
        for entry in payload["files"]:
            requires_python = entry.get("requires-python")
            files.append(
                UpstreamFile(
                    filename=entry["filename"],
                    url=urljoin(base_url, entry["url"]),
                    hashes=dict(entry.get("hashes") or {}),
                    requires_python=requires_python or None,
                )
            )
        logger.debug(f"Parsed JSON project page: {json.dumps([f.filename for f in files])}")
        return files

    def _parse_html_page(self, text: str, base_url: str) -> list[UpstreamFile]:
        parser = _ProjectPageParser()
        parser.feed(text)
        parser.close()

        files = []
        for anchor in parser.anchors:
            url, fragment = urldefrag(urljoin(base_url, anchor["href"]))
            hashes = {}
            if "=" in fragment:
                algorithm, digest = fragment.split("=", 1)
                hashes[algorithm.lower()] = digest

            filename = anchor["text"].strip() or unquote(PurePosixPath(urlparse(url).path).name)
            if not filename:
                continue

            files.append(
                UpstreamFile(
                    filename=filename,
                    url=url,
                    hashes=hashes,
                    requires_python=anchor.get("data-requires-python") or None,
                )
            )
        return files

    def fetch_file(self, url: str, timeout: float | None = None) -> Iterator[bytes]:
        """Start downloading a file and stream its bytes.

        The request is issued before this returns, so connection failures and
        HTTP errors surface here rather than on first iteration.

        Raises:
            UpstreamNotFound: If the upstream has no such file
            UpstreamError: If the request fails
        """
        logger.info(f"Downloading {url}")
        response = self._get(url, timeout, stream=True)

        def chunks() -> Iterator[bytes]:
            try:
                for chunk in response.iter_content(chunk_size=65536):
                    if chunk:  # Filter out keep-alive chunks
                        yield chunk
            except requests.RequestException as e:
                logger.error(f"Download of {url} interrupted: {e}")
                raise UpstreamError(url, f"Download of {url} interrupted: {e}") from e
            finally:
                response.close()

        return chunks()

    def close(self) -> None:
        self.session.close()
