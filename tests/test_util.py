from __future__ import annotations

import pytest

from bff.auth.util import join_redirect, parse_ttl, random_token, sanitize_next_path


@pytest.mark.parametrize(
    "value,expected",
    [
        ("30s", 30),
        ("15m", 900),
        ("1h", 3600),
        ("7d", 604800),
        ("120", 120),
        (45, 45),
    ],
)
def test_parse_ttl_accepts_units_and_bare_seconds(value, expected) -> None:
    assert parse_ttl(value) == expected


@pytest.mark.parametrize("value", [None, "", "abc", "1w", "-5", "0", 0, -10, "1.5h", " h"])
def test_parse_ttl_falls_back_to_default(value) -> None:
    assert parse_ttl(value, default=1234) == 1234


def test_parse_ttl_default_is_one_hour() -> None:
    assert parse_ttl("garbage") == 3600


def test_random_token_is_url_safe_and_unique() -> None:
    tokens = {random_token() for _ in range(50)}
    assert len(tokens) == 50
    for t in tokens:
        assert "=" not in t and "+" not in t and "/" not in t


def test_sanitize_next_path_blocks_open_redirects() -> None:
    assert sanitize_next_path("/inbox") == "/inbox"
    assert sanitize_next_path("https://evil.com") == "/"
    assert sanitize_next_path("//evil.com") == "/"
    assert sanitize_next_path("/\\evil.com") == "/"
    assert sanitize_next_path(None) == "/"


def test_join_redirect() -> None:
    base = "http://localhost:3000"
    assert join_redirect(base, None) == base
    assert join_redirect(base, "/dashboard?tab=1") == "http://localhost:3000/dashboard?tab=1"
    assert join_redirect(base, "//evil.com") == base
