"""Tests for controlset.resolver.

Network is never touched: remote fetches go through fake fetchers/openers.
"""
from __future__ import annotations

import io
import threading
import urllib.error
from email.message import Message
from pathlib import Path
from typing import Any

import orjson
import pytest

from controlset.errors import ResolutionError, UnsupportedFormatError
from controlset.oscal_types import Catalog, Resource, ResourceLink
from controlset.resolver import (
    MemoCache,
    ReferenceResolver,
    cache_filename,
    fetch_url,
    is_remote,
    select_resource_link,
)


def _catalog_bytes(title: str = "Remote Catalog") -> bytes:
    return orjson.dumps(
        {
            "catalog": {
                "uuid": "c",
                "metadata": {"title": title},
                "controls": [{"id": "x-1", "title": "X"}],
            }
        }
    )


class FakeResponse(io.BytesIO):
    def __init__(self, body: bytes, status: int = 200) -> None:
        super().__init__(body)
        self.status = status


def _redirect(url: str, code: int, location: str | None) -> urllib.error.HTTPError:
    headers = Message()
    if location is not None:
        headers["Location"] = location
    return urllib.error.HTTPError(url, code, "Moved", headers, None)


class FakeOpener:
    """Scripted opener: maps url -> response or exception."""

    def __init__(self, routes: dict[str, Any]) -> None:
        self.routes = routes
        self.calls: list[str] = []

    def open(self, url: str, timeout: float | None = None) -> Any:
        self.calls.append(url)
        result = self.routes[url]
        if isinstance(result, BaseException):
            raise result
        return result


class CountingFetcher:
    def __init__(self, body: bytes) -> None:
        self.body = body
        self.urls: list[str] = []

    def __call__(self, url: str) -> bytes:
        self.urls.append(url)
        return self.body


class TestHelpers:
    def test_cache_filename(self) -> None:
        assert (
            cache_filename("https://raw.githubusercontent.com/usnistgov/x/cat.json")
            == "raw_githubusercontent_com_cat.json"
        )

    def test_cache_filename_no_path(self) -> None:
        assert cache_filename("https://example.org/") == "example_org_resource"

    def test_is_remote(self) -> None:
        assert is_remote("https://a/b")
        assert is_remote("http://a/b")
        assert not is_remote("#uuid")
        assert not is_remote("catalog.json")

    def test_select_prefers_json(self) -> None:
        res = Resource(
            uuid="r",
            rlinks=(
                ResourceLink("c.xml", "application/oscal.catalog+xml"),
                ResourceLink("c.yaml", "application/yaml"),
                ResourceLink("c.json", "application/oscal.catalog+json"),
            ),
        )
        assert select_resource_link(res).href == "c.json"

    def test_select_falls_back_to_first(self) -> None:
        res = Resource(uuid="r", rlinks=(ResourceLink("a.bin", "x/y"), ResourceLink("b.bin")))
        assert select_resource_link(res).href == "a.bin"

    def test_select_no_links(self) -> None:
        with pytest.raises(ResolutionError):
            select_resource_link(Resource(uuid="r"))


class TestFetchUrl:
    def test_success(self) -> None:
        opener = FakeOpener({"https://a/c.json": FakeResponse(b"ok")})
        assert fetch_url("https://a/c.json", opener=opener) == b"ok"

    def test_one_redirect_followed(self) -> None:
        opener = FakeOpener(
            {
                "https://a/c.json": _redirect("https://a/c.json", 302, "/moved/c.json"),
                "https://a/moved/c.json": FakeResponse(b"moved"),
            }
        )
        assert fetch_url("https://a/c.json", opener=opener) == b"moved"
        assert opener.calls == ["https://a/c.json", "https://a/moved/c.json"]

    def test_second_redirect_rejected(self) -> None:
        opener = FakeOpener(
            {
                "https://a/1": _redirect("https://a/1", 301, "https://a/2"),
                "https://a/2": _redirect("https://a/2", 301, "https://a/3"),
            }
        )
        with pytest.raises(ResolutionError, match="redirect"):
            fetch_url("https://a/1", opener=opener)

    def test_redirect_without_location(self) -> None:
        opener = FakeOpener({"https://a/1": _redirect("https://a/1", 302, None)})
        with pytest.raises(ResolutionError, match="Location"):
            fetch_url("https://a/1", opener=opener)

    def test_http_error(self) -> None:
        opener = FakeOpener(
            {"https://a/1": urllib.error.HTTPError("https://a/1", 404, "Not Found", Message(), None)}
        )
        with pytest.raises(ResolutionError, match="404"):
            fetch_url("https://a/1", opener=opener)

    def test_non_2xx_status(self) -> None:
        opener = FakeOpener({"https://a/1": FakeResponse(b"", status=500)})
        with pytest.raises(ResolutionError):
            fetch_url("https://a/1", opener=opener)

    def test_url_error(self) -> None:
        opener = FakeOpener({"https://a/1": urllib.error.URLError("no route")})
        with pytest.raises(ResolutionError, match="no route"):
            fetch_url("https://a/1", opener=opener)


class TestMemoCache:
    def test_computes_once(self) -> None:
        cache: MemoCache[str, int] = MemoCache()
        calls: list[int] = []

        def compute() -> int:
            calls.append(1)
            return 42

        assert cache.get_or_compute("k", compute) == 42
        assert cache.get_or_compute("k", compute) == 42
        assert len(calls) == 1
        assert "k" in cache
        assert len(cache) == 1

    def test_failure_not_cached(self) -> None:
        cache: MemoCache[str, int] = MemoCache()

        def boom() -> int:
            raise ValueError("x")

        with pytest.raises(ValueError):
            cache.get_or_compute("k", boom)
        assert "k" not in cache
        assert cache.get_or_compute("k", lambda: 1) == 1

    def test_single_flight(self) -> None:
        cache: MemoCache[str, int] = MemoCache()
        started = threading.Event()
        release = threading.Event()
        calls: list[int] = []

        def slow() -> int:
            calls.append(1)
            started.set()
            release.wait(timeout=5)
            return 7

        results: list[int] = []
        first = threading.Thread(target=lambda: results.append(cache.get_or_compute("k", slow)))
        first.start()
        started.wait(timeout=5)
        second = threading.Thread(target=lambda: results.append(cache.get_or_compute("k", slow)))
        second.start()
        release.set()
        first.join(timeout=5)
        second.join(timeout=5)
        assert results == [7, 7]
        assert len(calls) == 1

    def test_clear(self) -> None:
        cache: MemoCache[str, int] = MemoCache()
        cache.get_or_compute("k", lambda: 1)
        cache.clear()
        assert len(cache) == 0


class TestReferenceResolver:
    def test_local_relative_path(self, tmp_path: Path) -> None:
        (tmp_path / "cat.json").write_bytes(_catalog_bytes("Local"))
        resolver = ReferenceResolver(tmp_path / "cache")
        doc = resolver.resolve("cat.json", tmp_path)
        assert isinstance(doc, Catalog)
        assert doc.metadata.title == "Local"

    def test_missing_local_file(self, tmp_path: Path) -> None:
        resolver = ReferenceResolver(tmp_path / "cache")
        with pytest.raises(ResolutionError, match="Catalog file not found"):
            resolver.resolve("missing.json", tmp_path)

    def test_xml_extension_unsupported(self, tmp_path: Path) -> None:
        (tmp_path / "cat.xml").write_text("<catalog/>")
        resolver = ReferenceResolver(tmp_path / "cache")
        with pytest.raises(UnsupportedFormatError):
            resolver.resolve("cat.xml", tmp_path)

    def test_remote_downloaded_once(self, tmp_path: Path) -> None:
        fetcher = CountingFetcher(_catalog_bytes())
        resolver = ReferenceResolver(tmp_path / "cache", fetcher=fetcher)
        url = "https://example.org/oscal/cat.json"
        first = resolver.resolve(url, tmp_path)
        second = resolver.resolve(url, tmp_path)
        assert first is second
        assert fetcher.urls == [url]
        assert (tmp_path / "cache" / "example_org_cat.json").exists()
        assert resolver.cache_stats() == {"documents": 1, "downloads": 1}

    def test_existing_cache_file_reused(self, tmp_path: Path) -> None:
        cache_dir = tmp_path / "cache"
        cache_dir.mkdir()
        (cache_dir / "example_org_cat.json").write_bytes(_catalog_bytes("Cached"))
        fetcher = CountingFetcher(b"unused")
        resolver = ReferenceResolver(cache_dir, fetcher=fetcher)
        doc = resolver.resolve("https://example.org/cat.json", tmp_path)
        assert doc.metadata.title == "Cached"
        assert fetcher.urls == []

    def test_back_matter_local_link(self, tmp_path: Path) -> None:
        (tmp_path / "cat.json").write_bytes(_catalog_bytes("BM"))
        back_matter = {
            "r-1": Resource(uuid="r-1", rlinks=(ResourceLink("cat.json", "application/json"),))
        }
        resolver = ReferenceResolver(tmp_path / "cache")
        doc = resolver.resolve("#r-1", tmp_path, back_matter)
        assert doc.metadata.title == "BM"

    def test_back_matter_remote_link(self, tmp_path: Path) -> None:
        fetcher = CountingFetcher(_catalog_bytes("Remote BM"))
        back_matter = {
            "r-1": Resource(
                uuid="r-1",
                rlinks=(ResourceLink("https://example.org/cat.json", "application/json"),),
            )
        }
        resolver = ReferenceResolver(tmp_path / "cache", fetcher=fetcher)
        doc = resolver.resolve("#r-1", tmp_path, back_matter)
        assert doc.metadata.title == "Remote BM"
        assert fetcher.urls == ["https://example.org/cat.json"]

    def test_back_matter_missing_id(self, tmp_path: Path) -> None:
        resolver = ReferenceResolver(tmp_path / "cache")
        with pytest.raises(ResolutionError, match="Back-matter resource not found: nope"):
            resolver.resolve("#nope", tmp_path, {})

    def test_shared_cache_injected(self, tmp_path: Path) -> None:
        (tmp_path / "cat.json").write_bytes(_catalog_bytes())
        shared: MemoCache[str, Any] = MemoCache()
        ReferenceResolver(tmp_path / "c1", cache=shared).resolve("cat.json", tmp_path)
        assert "cat.json" in shared

    def test_clear_cache(self, tmp_path: Path) -> None:
        (tmp_path / "cat.json").write_bytes(_catalog_bytes())
        resolver = ReferenceResolver(tmp_path / "cache")
        resolver.resolve("cat.json", tmp_path)
        resolver.clear_cache()
        assert resolver.cache_stats()["documents"] == 0
