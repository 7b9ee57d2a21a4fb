"""
Tests for the content fetcher.
"""

import asyncio

import pytest
from codementor.errors import AccessDeniedError, RateLimitedError, TransientHostError
from codementor.fetcher import ContentFetcher
from codementor.github import FileContent
from codementor.limiter import ConcurrencyLimiter
from codementor.retry import RetryPolicy

from tests.fakes import FakeHost


class FlakyHost(FakeHost):
    """Host failing a fixed number of times per path before answering."""

    def __init__(self, files, transient_failures: int, **kwargs):
        super().__init__(files, **kwargs)
        self.transient_failures = transient_failures

    def get_file_content(self, owner, repo, path, ref):
        if self.count("content", path) < self.transient_failures:
            self._record("content", path, ref)
            raise TransientHostError("GitHub returned 502", status=502)
        return super().get_file_content(owner, repo, path, ref)


class RawHost(FakeHost):
    """Host returning a preset contents-API entry."""

    def __init__(self, entry, **kwargs):
        super().__init__({}, **kwargs)
        self.entry = entry

    def get_file_content(self, owner, repo, path, ref):
        self._record("content", path, ref)
        return self.entry


def make_fetcher(host, **kwargs):
    return ContentFetcher(
        host,
        limiter=ConcurrencyLimiter(5),
        retry_policy=RetryPolicy(max_attempts=3, base_delay=0),
        **kwargs,
    )


def fetch(fetcher, path, ref="main"):
    return asyncio.run(fetcher.fetch_raw_content("octo", "demo", path, ref))


class TestFetchRawContent:
    """Test rejection rules and retry behavior."""

    def test_fetches_text(self):
        host = FakeHost({"src/app.py": "print('hello')\n"})
        result = fetch(make_fetcher(host), "src/app.py")

        assert result is not None
        assert result.content == "print('hello')\n"
        assert result.size == len("print('hello')\n")

    def test_oversize_file_returns_none(self):
        """A 300 KiB file is above the 256 KiB ceiling."""
        host = FakeHost({"big.txt": "x"}, sizes={"big.txt": 300 * 1024})
        assert fetch(make_fetcher(host), "big.txt") is None

    def test_file_at_ceiling_is_accepted(self):
        host = FakeHost({"edge.txt": "x"}, sizes={"edge.txt": 256 * 1024})
        assert fetch(make_fetcher(host), "edge.txt") is not None

    def test_missing_file_returns_none_after_one_attempt(self):
        host = FakeHost({})
        assert fetch(make_fetcher(host), "missing.py") is None
        assert host.count("content", "missing.py") == 1

    def test_forbidden_file_returns_none(self):
        host = FakeHost(
            {},
            failures={"secret.py": AccessDeniedError("Access denied", status=403)},
        )
        assert fetch(make_fetcher(host), "secret.py") is None
        assert host.count("content", "secret.py") == 1

    def test_transient_failure_is_retried(self):
        host = FlakyHost({"app.py": "ok"}, transient_failures=2)
        result = fetch(make_fetcher(host), "app.py")

        assert result is not None
        assert result.content == "ok"
        assert host.count("content", "app.py") == 3

    def test_persistent_transient_failure_raises(self):
        host = FlakyHost({"app.py": "ok"}, transient_failures=10)
        with pytest.raises(TransientHostError):
            fetch(make_fetcher(host), "app.py")
        assert host.count("content", "app.py") == 3

    def test_rate_limit_propagates_without_retry(self):
        host = FakeHost(
            {}, failures={"app.py": RateLimitedError("slow down", status=429)}
        )
        with pytest.raises(RateLimitedError):
            fetch(make_fetcher(host), "app.py")
        assert host.count("content", "app.py") == 1

    def test_directory_returns_none(self):
        host = FakeHost({"src/a.py": "a"}, folders=("src",))
        assert fetch(make_fetcher(host), "src") is None

    def test_non_file_entry_returns_none(self):
        host = RawHost(FileContent(path="link", type="symlink", size=4, content="dGFyZ2V0"))
        assert fetch(make_fetcher(host), "link") is None

    def test_entry_without_content_returns_none(self):
        host = RawHost(FileContent(path="huge.bin", type="file", size=10, encoding="none"))
        assert fetch(make_fetcher(host), "huge.bin") is None

    def test_binary_content_returns_none(self):
        host = FakeHost({"image.png": "\x89PNG\x00\x00data"})
        assert fetch(make_fetcher(host), "image.png") is None

    def test_respects_custom_ceiling(self):
        host = FakeHost({"small.txt": "0123456789"})
        fetcher = make_fetcher(host, max_file_size=5)
        assert fetch(fetcher, "small.txt") is None


class TestResolveRef:
    """Test default-branch lookup and caching."""

    def test_uses_default_branch_once(self):
        host = FakeHost({"a.py": "a", "b.py": "b"}, default_branch="develop")
        fetcher = make_fetcher(host)

        async def main():
            await fetcher.fetch_raw_content("octo", "demo", "a.py")
            await fetcher.fetch_raw_content("octo", "demo", "b.py")

        asyncio.run(main())

        assert host.count("metadata") == 1
        assert ("content", "a.py", "develop") in host.calls
        assert ("content", "b.py", "develop") in host.calls

    def test_falls_back_when_lookup_fails(self):
        host = FakeHost(
            {"a.py": "a"}, metadata_error=TransientHostError("down", status=503)
        )
        fetcher = make_fetcher(host)

        ref = asyncio.run(fetcher.resolve_ref("octo", "demo"))

        assert ref == "main"

    def test_remembered_branch_skips_lookup(self):
        host = FakeHost({"a.py": "a"})
        fetcher = make_fetcher(host)
        fetcher.remember_default_branch("octo", "demo", "trunk")

        asyncio.run(fetcher.fetch_raw_content("octo", "demo", "a.py"))

        assert host.count("metadata") == 0
        assert ("content", "a.py", "trunk") in host.calls


class TestFetchLimited:
    def test_fetches_through_limiter(self):
        files = {f"file{i}.py": f"value = {i}" for i in range(20)}
        host = FakeHost(files)
        fetcher = make_fetcher(host)

        async def main():
            return await asyncio.gather(
                *(fetcher.fetch_limited("octo", "demo", path, "main") for path in files)
            )

        results = asyncio.run(main())

        assert [r.content for r in results] == list(files.values())
        assert fetcher.limiter.active == 0
