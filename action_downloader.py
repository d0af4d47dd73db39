import logging
import queue
import threading
import time
from dataclasses import dataclass
from urllib.parse import parse_qs, quote, urlparse

import requests

LOGGER = logging.getLogger(__name__)

GITHUB_API_ROOT = "https://api.github.com"
DEFAULT_TIMEOUT = 30


class DownloadError(Exception):
    """A failure of one download stage, published on the error stream."""

    stage = None

    def __init__(self, message, cause=None):
        super().__init__(message)
        self.cause = cause


class SearchPageError(DownloadError):
    stage = "search"


class ResolveError(DownloadError):
    stage = "resolve"


class FetchError(DownloadError):
    stage = "fetch"


@dataclass(frozen=True)
class SearchHit:
    repository_id: int
    repository: str
    path: str
    ref: str
    url: str = ""


@dataclass(frozen=True)
class ContentReference:
    repository: str
    path: str
    ref: str
    download_url: str


@dataclass(frozen=True)
class ActionConfiguration:
    name: str
    configuration: bytes


_CLOSED = object()


class Stream:
    """
    Unbounded FIFO that any number of threads publish into and one consumer
    iterates. Iteration ends once the stream is closed and drained.
    """

    def __init__(self):
        self._queue = queue.Queue()

    def publish(self, item):
        self._queue.put(item)

    def close(self):
        self._queue.put(_CLOSED)

    def __iter__(self):
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                # keep the marker so later iterations stop as well
                self._queue.put(_CLOSED)
                return
            yield item


def search_query(action_name):
    return f"{action_name} in:file language:yaml"


def search_hit(item):
    """Build a SearchHit from one item of a code-search page."""
    repository = item["repository"]
    url = item.get("url") or ""
    refs = parse_qs(urlparse(url).query).get("ref", [""])
    return SearchHit(
        repository_id=repository["id"],
        repository=repository.get("full_name", str(repository["id"])),
        path=item["path"],
        ref=refs[0],
        url=url,
    )


def next_page(links):
    """
    Return the page number of the link tagged "next", or None on the last page.

    `links` is the parsed Link header as exposed by `requests.Response.links`.
    """
    url = links.get("next", {}).get("url")
    if not url:
        return None
    pages = parse_qs(urlparse(url).query).get("page")
    if not pages:
        raise ValueError(f"next link has no page parameter: {url}")
    return int(pages[0])


def rate_limit_message(response):
    if response is None or response.status_code != 403:
        return None
    if response.headers.get("X-RateLimit-Remaining") != "0":
        return None
    try:
        reset_time = int(response.headers.get("X-RateLimit-Reset", 0))
    except ValueError:
        return "Rate limit exceeded."
    wait_time = max(0, reset_time - int(time.time()))
    return f"Rate limit exceeded. Try again in {wait_time} seconds."


class Downloader:
    """
    Finds workflow files referencing an action through the code-search API
    and downloads each of them on its own thread.
    """

    def __init__(self, api_root=GITHUB_API_ROOT, session=None, timeout=DEFAULT_TIMEOUT, max_workers=None):
        self.api_root = api_root.rstrip("/")
        self.session = session if session is not None else requests.Session()
        self.timeout = timeout
        if max_workers is not None and max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {max_workers}")
        self.max_workers = max_workers

    def headers(self, token):
        return {
            "Authorization": f"token {token}",
            "Accept": "application/vnd.github.v3+json"
        }

    def download_configurations(self, action_name, token):
        """
        Start discovering and downloading workflow files that reference
        `action_name`. Returns `(configurations, errors)`, two streams that
        are both closed once pagination has ended and every download has
        finished.
        """
        configurations = Stream()
        errors = Stream()
        worker = threading.Thread(
            target=self._run,
            args=(action_name, self.headers(token), configurations, errors),
            name="action-search",
            daemon=True,
        )
        worker.start()
        return configurations, errors

    def _run(self, action_name, headers, configurations, errors):
        tasks = []
        try:
            slots = threading.BoundedSemaphore(self.max_workers) if self.max_workers else None
            for hit in self.search(action_name, headers):
                if slots is not None:
                    slots.acquire()
                task = threading.Thread(
                    target=self._download,
                    args=(hit, headers, configurations, errors, slots),
                    daemon=True,
                )
                task.start()
                tasks.append(task)
        except SearchPageError as e:
            LOGGER.debug("search for %s stopped: %s", action_name, e)
            errors.publish(e)
        except Exception as e:
            LOGGER.debug("search for %s failed: %s", action_name, e)
            errors.publish(SearchPageError(str(e), e))
        finally:
            for task in tasks:
                task.join()
            configurations.close()
            errors.close()

    def _download(self, hit, headers, configurations, errors, slots=None):
        try:
            reference = self.resolve(hit, headers)
            content = self.fetch(reference, headers)
        except DownloadError as e:
            LOGGER.debug("%s of %s/%s failed: %s", e.stage, hit.repository, hit.path, e)
            errors.publish(e)
        else:
            configurations.publish(ActionConfiguration(
                name=f"{reference.repository}/{reference.path}",
                configuration=content,
            ))
        finally:
            if slots is not None:
                slots.release()

    def search(self, action_name, headers):
        """Yield a SearchHit for every item on every page of the code search."""
        url = f"{self.api_root}/search/code"
        page = 1
        while page is not None:
            LOGGER.debug("requesting search page %d for %s", page, action_name)
            try:
                response = self.session.get(
                    url,
                    params={"q": search_query(action_name), "page": page},
                    headers=headers,
                    timeout=self.timeout,
                )
                response.raise_for_status()
                results = response.json()
                hits = [search_hit(item) for item in results["items"]]
                following = next_page(response.links)
            except requests.exceptions.HTTPError as e:
                message = rate_limit_message(e.response) or f"search page {page} failed: {e}"
                raise SearchPageError(message, e) from e
            except (requests.exceptions.RequestException, ValueError, KeyError, TypeError,
                    AttributeError) as e:
                raise SearchPageError(f"search page {page} is unusable: {e}", e) from e
            if following is not None and following <= page:
                raise SearchPageError(f"search page {page} links back to page {following}")
            LOGGER.debug("search page %d returned %d hits", page, len(hits))
            yield from hits
            page = following

    def resolve(self, hit, headers):
        """Look up the download location of the file version a hit points to."""
        url, params = hit.url, None
        if not url:
            url = f"{self.api_root}/repositories/{hit.repository_id}/contents/{quote(hit.path)}"
            params = {"ref": hit.ref}
        try:
            response = self.session.get(url, params=params, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            contents = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            raise ResolveError(f"resolving {hit.repository}/{hit.path} failed: {e}", e) from e
        if not isinstance(contents, dict):
            raise ResolveError(f"resolving {hit.repository}/{hit.path} returned no contents object")
        return ContentReference(
            repository=hit.repository,
            path=hit.path,
            ref=hit.ref,
            download_url=contents.get("download_url") or "",
        )

    def fetch(self, reference, headers):
        """Download the raw bytes behind a content reference."""
        try:
            response = self.session.get(reference.download_url, headers=headers, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise FetchError(f"downloading {reference.repository}/{reference.path} failed: {e}", e) from e
        return response.content
