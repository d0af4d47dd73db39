import json
from unittest import mock

import pytest
import requests

API_ROOT = "https://api.github.test"
RAW_ROOT = "https://raw.github.test"


def make_response(body=b"", status=200, headers=None, url=""):
    response = requests.Response()
    response.status_code = status
    response._content = body if isinstance(body, bytes) else json.dumps(body).encode()
    response.encoding = "utf-8"
    response.headers.update(headers or {})
    response.url = url
    return response


class FakeGitHub:
    """Routes `session.get` calls by URL; unknown URLs are unreachable."""

    def __init__(self):
        self.routes = {}
        self.session = mock.Mock(spec=requests.Session)
        self.session.get.side_effect = self.get

    def route(self, url, handler):
        self.routes[url] = handler

    def get(self, url, params=None, headers=None, timeout=None):
        handler = self.routes.get(url)
        if handler is None:
            raise requests.exceptions.ConnectionError(f"Failed to establish a connection to {url!r}")
        if callable(handler):
            return handler(params or {})
        return handler

    def calls(self, url):
        return [c for c in self.session.get.call_args_list if c.args[0] == url]

    def add_file(self, repository_id, repository, path, ref, content, download_url=None):
        """Serve the contents and raw endpoints for one file, return its search item."""
        contents_url = f"{API_ROOT}/repositories/{repository_id}/contents/{path}?ref={ref}"
        if download_url is None:
            download_url = f"{RAW_ROOT}/{repository}/{ref}/{path}"
            self.route(download_url, make_response(content, url=download_url))
        self.route(contents_url, make_response({
            "name": path.rsplit("/", 1)[-1],
            "path": path,
            "download_url": download_url,
        }, url=contents_url))
        return {
            "name": path.rsplit("/", 1)[-1],
            "path": path,
            "url": contents_url,
            "repository": {"id": repository_id, "full_name": repository},
        }


@pytest.fixture
def github():
    return FakeGitHub()
