"""Unit tests for utility functions in nextdns_sync.cli.

Tests cover:
- Source list parsing (_parse_source_list)
- Exclude pattern parsing (_parse_exclude_patterns)
- Domain exclusion checking (_is_domain_excluded)
- Hosts line parsing (_parse_block_line, _parse_rewrite_line)
"""

from nextdns_sync.cli import (
    _is_domain_excluded,
    _parse_block_line,
    _parse_exclude_patterns,
    _parse_rewrite_line,
    _parse_source_list,
)

# =============================================================================
# Source List Parsing Tests
# =============================================================================


def test_parse_source_list_empty() -> None:
    assert _parse_source_list("") == []


def test_parse_source_list_commas_and_whitespace() -> None:
    result = _parse_source_list(" https://a/hosts , https://b/hosts\n/config/local.hosts ")
    assert result == ["https://a/hosts", "https://b/hosts", "/config/local.hosts"]


def test_parse_source_list_dedupes_preserving_order() -> None:
    assert _parse_source_list("b,a,b,,a") == ["b", "a"]


# =============================================================================
# Exclude Pattern Tests
# =============================================================================


def test_parse_exclude_patterns_empty() -> None:
    assert _parse_exclude_patterns("") == []


def test_exclude_exact_domain_match() -> None:
    patterns = _parse_exclude_patterns("auth.example.com")

    assert _is_domain_excluded("auth.example.com", patterns)
    assert _is_domain_excluded("AUTH.example.com", patterns)
    assert not _is_domain_excluded("xauth.example.com", patterns)


def test_exclude_wildcard_match() -> None:
    patterns = _parse_exclude_patterns("*.internal.*, dev-*")

    assert _is_domain_excluded("app.internal.example.com", patterns)
    assert _is_domain_excluded("dev-42.example.com", patterns)
    assert not _is_domain_excluded("app.public.example.com", patterns)


def test_exclude_regex_match() -> None:
    patterns = _parse_exclude_patterns(r"~^staging-\d+\.example\.com$")

    assert _is_domain_excluded("staging-12.example.com", patterns)
    assert not _is_domain_excluded("staging-x.example.com", patterns)


def test_invalid_regex_is_skipped() -> None:
    patterns = _parse_exclude_patterns("~[unclosed, ok.example.com")

    assert len(patterns) == 1
    assert _is_domain_excluded("ok.example.com", patterns)


# =============================================================================
# Block Line Parsing Tests
# =============================================================================


def test_parse_block_line_hosts_format() -> None:
    assert _parse_block_line("0.0.0.0 ads.example.com") == ["ads.example.com"]


def test_parse_block_line_multiple_hosts_and_comment() -> None:
    line = "127.0.0.1 ads.example.com track.example.com  # trackers"
    assert _parse_block_line(line) == ["ads.example.com", "track.example.com"]


def test_parse_block_line_domain_only() -> None:
    assert _parse_block_line("ads.example.com") == ["ads.example.com"]


def test_parse_block_line_adblock_syntax() -> None:
    assert _parse_block_line("||ads.example.com^") == ["ads.example.com"]
    assert _parse_block_line("||ads.example.com^$third-party") == ["ads.example.com"]


def test_parse_block_line_skips_comments_and_local_names() -> None:
    assert _parse_block_line("# comment") == []
    assert _parse_block_line("! adblock comment") == []
    assert _parse_block_line("") == []
    assert _parse_block_line("127.0.0.1 localhost") == []
    assert _parse_block_line("0.0.0.0 0.0.0.0") == []
    assert _parse_block_line("::1 ip6-localhost ip6-loopback") == []


def test_parse_block_line_skips_exception_rules() -> None:
    assert _parse_block_line("@@||allowed.example.com^") == []


def test_parse_block_line_skips_cosmetic_rules() -> None:
    assert _parse_block_line("example.com##.ad-banner") == []
    assert _parse_block_line("example.com#@#.ad-banner") == []
    assert _parse_block_line("example.com#?#div:has(> a.ad)") == []
    assert _parse_block_line("example.com#$#body { overflow: auto; }") == []
    assert _parse_block_line("##.ad-banner") == []


def test_parse_block_line_comment_needs_leading_whitespace() -> None:
    assert _parse_block_line("ads.example.com # note") == ["ads.example.com"]
    assert _parse_block_line("0.0.0.0 ads.example.com\t#note") == ["ads.example.com"]
    assert _parse_block_line("#0.0.0.0 ads.example.com") == []
    assert _parse_block_line("ads.example.com#frag") == []


# =============================================================================
# Rewrite Line Parsing Tests
# =============================================================================


def test_parse_rewrite_line_hosts_format() -> None:
    assert _parse_rewrite_line("192.168.1.10 nas.example.com") == [
        ("nas.example.com", "192.168.1.10")
    ]


def test_parse_rewrite_line_multiple_domains() -> None:
    assert _parse_rewrite_line("10.0.0.5 a.example.com b.example.com # lan") == [
        ("a.example.com", "10.0.0.5"),
        ("b.example.com", "10.0.0.5"),
    ]


def test_parse_rewrite_line_ipv6() -> None:
    assert _parse_rewrite_line("2001:db8::1 v6.example.com") == [("v6.example.com", "2001:db8::1")]


def test_parse_rewrite_line_requires_address() -> None:
    assert _parse_rewrite_line("nas.example.com") == []
    assert _parse_rewrite_line("nas.example.com 192.168.1.10") == []


def test_parse_rewrite_line_skips_blocking_addresses() -> None:
    assert _parse_rewrite_line("0.0.0.0 ads.example.com") == []
    assert _parse_rewrite_line(":: ads.example.com") == []
