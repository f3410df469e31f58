import socket

import pytest
from aiohttp.abc import AbstractResolver

from conftest import fake_resolve
from errors import UnsafeUrlError
from url_validator import (
    ScreeningResolver,
    blocked_address_reason,
    dedupe_key,
    ensure_public_host,
    normalize_url,
    validate_urls,
)


class TestNormalizeUrl:
    def test_prepends_https_when_scheme_missing(self):
        assert normalize_url("example.com") == ("https://example.com/", None)

    def test_keeps_path_and_query(self):
        url, error = normalize_url("http://Example.COM/a/b?q=1")
        assert error is None
        assert url == "http://example.com/a/b?q=1"

    def test_rejects_other_schemes(self):
        url, error = normalize_url("ftp://example.com/file")
        assert url is None
        assert "ftp" in error

    def test_rejects_overlong_urls(self):
        url, error = normalize_url("https://example.com/" + "a" * 2100)
        assert url is None
        assert "too long" in error


@pytest.mark.parametrize(
    "address",
    [
        "127.0.0.1",
        "10.1.2.3",
        "172.16.0.1",
        "192.168.1.1",
        "169.254.169.254",
        "100.64.0.1",
        "0.0.0.0",
        "224.0.0.1",
        "::1",
        "fe80::1",
        "fd00:ec2::254",
        "::ffff:127.0.0.1",
    ],
)
def test_blocked_addresses(address):
    assert blocked_address_reason(address) is not None


def test_public_address_allowed():
    assert blocked_address_reason("93.184.216.34") is None


def test_dedupe_key_ignores_trailing_slash():
    assert dedupe_key("https://example.com/about/") == dedupe_key("https://example.com/about")


async def test_valid_batch():
    result = await validate_urls("https://example.com\nexample.org", resolve=fake_resolve)
    assert result.valid
    assert result.urls == ["https://example.com/", "https://example.org/"]
    assert result.errors == []


async def test_commas_and_blank_lines_are_separators():
    result = await validate_urls(" https://example.com ,\n\n example.org ", resolve=fake_resolve)
    assert result.urls == ["https://example.com/", "https://example.org/"]


async def test_empty_batch_is_invalid():
    result = await validate_urls(" \n , ", resolve=fake_resolve)
    assert not result.valid
    assert result.errors


async def test_duplicates_removed_with_warning():
    result = await validate_urls(
        "https://example.com/about\nhttps://example.com/about/", resolve=fake_resolve
    )
    assert result.valid
    assert result.urls == ["https://example.com/about"]
    assert len(result.warnings) == 1


async def test_oversized_batch_truncated_with_warning():
    raw = "\n".join(f"https://example.com/page{i}" for i in range(5))
    result = await validate_urls(raw, max_urls=3, resolve=fake_resolve)
    assert result.valid
    assert len(result.urls) == 3
    assert any("Maximum is 3" in w for w in result.warnings)


@pytest.mark.parametrize(
    "raw",
    [
        "http://localhost:8080/",
        "http://127.0.0.1/",
        "http://[::1]/",
        "http://169.254.169.254/latest/meta-data/",
        "https://internal.example.com/",
        "https://metadata.example.com/",
        "https://metadata.google.internal/",
        "https://app.localhost/",
        "https://unresolvable.invalid/",
    ],
)
async def test_unsafe_hosts_reject_the_whole_batch(raw):
    result = await validate_urls(f"https://example.com/\n{raw}", resolve=fake_resolve)
    assert not result.valid
    assert len(result.errors) == 1


async def test_every_resolved_address_is_checked():
    result = await validate_urls("https://mixed.example.com/", resolve=fake_resolve)
    assert not result.valid
    assert "127.0.0.1" in result.errors[0]


async def test_ensure_public_host():
    await ensure_public_host("https://example.com/", resolve=fake_resolve)
    with pytest.raises(UnsafeUrlError):
        await ensure_public_host("http://10.0.0.1/admin", resolve=fake_resolve)


class RebindingResolver(AbstractResolver):
    """Answers with a public address first and an internal one afterwards."""

    def __init__(self, answers):
        self.answers = list(answers)
        self.calls = 0

    async def resolve(self, host, port=0, family=socket.AF_INET):
        addresses = self.answers[min(self.calls, len(self.answers) - 1)]
        self.calls += 1
        return [
            {
                "hostname": host,
                "host": address,
                "port": port,
                "family": socket.AF_INET6 if ":" in address else socket.AF_INET,
                "proto": 0,
                "flags": 0,
            }
            for address in addresses
        ]

    async def close(self):
        pass


class TestScreeningResolver:
    async def test_public_answer_passes_through(self):
        resolver = ScreeningResolver(RebindingResolver([["93.184.216.34"]]))
        records = await resolver.resolve("example.com", 443)
        assert [r["host"] for r in records] == ["93.184.216.34"]

    async def test_rebound_answer_is_refused_at_connect_time(self):
        inner = RebindingResolver([["93.184.216.34"], ["169.254.169.254"]])
        resolver = ScreeningResolver(inner)

        assert await resolver.resolve("rebind.example.com", 443)
        with pytest.raises(OSError):
            await resolver.resolve("rebind.example.com", 443)
        assert inner.calls == 2

    async def test_internal_addresses_are_dropped_from_mixed_answers(self):
        resolver = ScreeningResolver(RebindingResolver([["127.0.0.1", "93.184.216.34", "10.1.2.3"]]))
        records = await resolver.resolve("mixed.example.com", 80)
        assert [r["host"] for r in records] == ["93.184.216.34"]
