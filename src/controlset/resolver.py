"""Reference resolution for profile imports.

An import href is one of:
  http(s)://...  remote document, downloaded once into a disk cache
  #<uuid>        back-matter indirection, resolved to its best-typed rlink
  anything else  path relative to the importing document's directory

Resolved documents are memoized per href for the lifetime of the resolver.
The memo is an injected MemoCache so tests can share or inspect it and so a
concurrent caller never fetches the same href twice.
"""
from __future__ import annotations

import logging
import ssl
import threading
import urllib.error
import urllib.request
from collections.abc import Callable, Mapping
from concurrent.futures import Future
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import urljoin, urlparse

import certifi

from controlset.document_io import decode_payload
from controlset.errors import ResolutionError
from controlset.oscal_types import Resource, ResourceLink, SourceDocument, parse_document

log = logging.getLogger(__name__)

# Preferred rlink media types, best first.
PREFERRED_MEDIA_TYPES: tuple[str, ...] = (
    "application/oscal.catalog+json",
    "application/json",
    "application/oscal.catalog+yaml",
    "application/yaml",
    "application/oscal.catalog+xml",
    "application/xml",
)

_REDIRECT_CODES = frozenset({301, 302, 303, 307, 308})
MAX_REDIRECTS = 1


class DocumentSource(Protocol):
    """Anything that can turn an import href into a parsed document."""

    def resolve(
        self,
        href: str,
        base_dir: Path,
        back_matter: Mapping[str, Resource] | None = None,
    ) -> SourceDocument: ...


type Fetcher = Callable[[str], bytes]


# ---------------------------------------------------------------------------
# Single-flight memo
# ---------------------------------------------------------------------------


class MemoCache[K, V]:
    """Unbounded memoizing map with single-flight semantics.

    The first caller for a key computes the value; concurrent callers for the
    same key wait on that computation. Failures are propagated to every
    waiter and are not cached.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._values: dict[K, V] = {}
        self._inflight: dict[K, Future[V]] = {}

    def get_or_compute(self, key: K, compute: Callable[[], V]) -> V:
        with self._lock:
            if key in self._values:
                return self._values[key]
            future = self._inflight.get(key)
            owner = future is None
            if future is None:
                future = Future()
                self._inflight[key] = future
        if not owner:
            return future.result()
        try:
            value = compute()
        except BaseException as exc:
            with self._lock:
                del self._inflight[key]
            future.set_exception(exc)
            raise
        with self._lock:
            self._values[key] = value
            del self._inflight[key]
        future.set_result(value)
        return value

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._values

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)

    def clear(self) -> None:
        with self._lock:
            self._values.clear()


# ---------------------------------------------------------------------------
# Remote fetch
# ---------------------------------------------------------------------------


class _NoRedirect(urllib.request.HTTPRedirectHandler):
    """Surface redirects as HTTPError so the hop count stays explicit."""

    def redirect_request(self, req, fp, code, msg, headers, newurl):  # type: ignore[no-untyped-def]
        return None


def build_opener() -> urllib.request.OpenerDirector:
    ctx = ssl.create_default_context(cafile=certifi.where())
    return urllib.request.build_opener(
        _NoRedirect(),
        urllib.request.HTTPSHandler(context=ctx),
    )


def fetch_url(
    url: str,
    *,
    timeout: float | None = None,
    opener: Any = None,
) -> bytes:
    """GET a URL, following at most one redirect.

    Raises ResolutionError on any non-2xx final status, on a redirect without
    a Location header, or when a second redirect is encountered.
    """
    opener = opener or build_opener()
    current = url
    for hop in range(MAX_REDIRECTS + 1):
        try:
            kwargs: dict[str, Any] = {}
            if timeout is not None:
                kwargs["timeout"] = timeout
            with opener.open(current, **kwargs) as resp:
                status = getattr(resp, "status", 200)
                if not 200 <= status < 300:
                    raise ResolutionError(f"HTTP {status} fetching {current}")
                return resp.read()
        except urllib.error.HTTPError as exc:
            if exc.code in _REDIRECT_CODES:
                location = exc.headers.get("Location") if exc.headers else None
                if not location:
                    raise ResolutionError(
                        f"HTTP {exc.code} without Location fetching {current}"
                    ) from exc
                if hop >= MAX_REDIRECTS:
                    raise ResolutionError(
                        f"Too many redirects fetching {url} (limit {MAX_REDIRECTS})"
                    ) from exc
                next_url = urljoin(current, location)
                log.debug("Redirect %s -> %s", current, next_url)
                current = next_url
                continue
            raise ResolutionError(f"HTTP {exc.code}: {exc.reason} fetching {current}") from exc
        except urllib.error.URLError as exc:
            raise ResolutionError(f"Failed to fetch {current}: {exc.reason}") from exc
    raise ResolutionError(f"Too many redirects fetching {url}")


def cache_filename(url: str) -> str:
    """Content-addressed cache filename: ``<host>_<last path segment>``."""
    parsed = urlparse(url)
    segments = [s for s in parsed.path.split("/") if s]
    filename = segments[-1] if segments else "resource"
    hostname = (parsed.hostname or "").replace(".", "_")
    return f"{hostname}_{filename}"


def is_remote(href: str) -> bool:
    return href.startswith("http://") or href.startswith("https://")


def select_resource_link(resource: Resource) -> ResourceLink:
    """Pick the best-typed rlink of a back-matter resource."""
    if not resource.rlinks:
        raise ResolutionError(f"Resource {resource.uuid} has no rlinks")
    for media_type in PREFERRED_MEDIA_TYPES:
        for rlink in resource.rlinks:
            if rlink.media_type == media_type:
                return rlink
    return resource.rlinks[0]


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class ReferenceResolver:
    """Resolve import hrefs into parsed SourceDocuments.

    Parameters
    ----------
    cache_dir:
        Directory for downloaded remote documents. A file already present is
        reused without fetching.
    fetcher:
        ``url -> bytes``. Defaults to :func:`fetch_url` with ``timeout``.
    cache:
        Run-scoped memo of href -> document. A fresh one per resolver by
        default.
    """

    def __init__(
        self,
        cache_dir: Path,
        *,
        fetcher: Fetcher | None = None,
        cache: MemoCache[str, SourceDocument] | None = None,
        timeout: float | None = None,
    ) -> None:
        self._cache_dir = cache_dir
        self._timeout = timeout
        self._fetcher: Fetcher = fetcher or (lambda url: fetch_url(url, timeout=self._timeout))
        self._cache: MemoCache[str, SourceDocument] = cache if cache is not None else MemoCache()
        self._downloads: MemoCache[str, Path] = MemoCache()

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    def resolve(
        self,
        href: str,
        base_dir: Path,
        back_matter: Mapping[str, Resource] | None = None,
    ) -> SourceDocument:
        return self._cache.get_or_compute(
            href, lambda: self._resolve_uncached(href, base_dir, back_matter)
        )

    def cache_stats(self) -> dict[str, int]:
        return {"documents": len(self._cache), "downloads": len(self._downloads)}

    def clear_cache(self) -> None:
        self._cache.clear()
        self._downloads.clear()

    def _resolve_uncached(
        self,
        href: str,
        base_dir: Path,
        back_matter: Mapping[str, Resource] | None,
    ) -> SourceDocument:
        if is_remote(href):
            path = self.download(href)
        elif href.startswith("#"):
            resource_id = href[1:]
            if not back_matter or resource_id not in back_matter:
                raise ResolutionError(f"Back-matter resource not found: {resource_id}")
            rlink = select_resource_link(back_matter[resource_id])
            path = self.download(rlink.href) if is_remote(rlink.href) else base_dir / rlink.href
        else:
            path = base_dir / href

        path = path.resolve()
        if not path.exists():
            raise ResolutionError(f"Catalog file not found: {path}")
        log.debug("Resolved %s -> %s", href, path)
        return parse_document(decode_payload(path.read_bytes(), path.suffix, source=str(path)))

    def download(self, url: str) -> Path:
        """Download a remote resource into the cache dir (once)."""
        return self._downloads.get_or_compute(url, lambda: self._download_uncached(url))

    def _download_uncached(self, url: str) -> Path:
        cache_path = self._cache_dir / cache_filename(url)
        if cache_path.exists():
            log.debug("Using cached download %s for %s", cache_path, url)
            return cache_path
        cache_path.parent.mkdir(parents=True, exist_ok=True)
        log.info("Downloading %s", url)
        content = self._fetcher(url)
        cache_path.write_bytes(content)
        return cache_path
