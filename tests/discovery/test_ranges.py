"""Tests for range specification parsing and expansion."""

import pytest

from hostwatch.config import ScanConfig
from hostwatch.discovery.ranges import RangeResolver, suggest_narrower_range
from hostwatch.exceptions import AutoDetectFailedError, InvalidRangeError, RangeTooLargeError
from hostwatch.models.settings import DefaultRangeConfig


@pytest.fixture
def resolver():
    return RangeResolver(ScanConfig(), auto_detector=lambda: "192.168.7.0/24")


def test_cidr_skips_network_and_broadcast(resolver):
    assert resolver.expand("192.168.1.0/30") == ["192.168.1.1", "192.168.1.2"]


@pytest.mark.parametrize("spec,expected", [
    ("192.168.1.4/31", ["192.168.1.4", "192.168.1.5"]),
    ("192.168.1.9/32", ["192.168.1.9"]),
])
def test_small_prefixes_keep_every_address(resolver, spec, expected):
    assert resolver.expand(spec) == expected


def test_cidr_24_has_254_hosts(resolver):
    addresses = resolver.expand("10.1.2.0/24")
    assert len(addresses) == 254
    assert addresses[0] == "10.1.2.1"
    assert addresses[-1] == "10.1.2.254"


def test_short_dashed_range_is_capped_at_254(resolver):
    assert resolver.expand("192.168.1.250-255") == [
        "192.168.1.250", "192.168.1.251", "192.168.1.252", "192.168.1.253", "192.168.1.254",
    ]


def test_full_dashed_range_crosses_octets(resolver):
    assert resolver.expand("10.0.0.254-10.0.1.1") == ["10.0.0.254", "10.0.0.255", "10.0.1.0", "10.0.1.1"]


def test_comma_list_keeps_order_and_drops_duplicates(resolver):
    assert resolver.expand("192.168.1.5, 192.168.1.1-6") == [
        "192.168.1.5", "192.168.1.1", "192.168.1.2", "192.168.1.3", "192.168.1.4", "192.168.1.6",
    ]


def test_range_at_the_cap_is_accepted(resolver):
    # 10.0.0.1 .. 10.0.3.232 is exactly 1000 addresses
    assert len(resolver.expand("10.0.0.1-10.0.3.232")) == 1000


def test_range_over_the_cap_is_rejected_with_suggestion(resolver):
    with pytest.raises(RangeTooLargeError) as exc_info:
        resolver.expand("10.0.0.0/16")
    error = exc_info.value
    assert error.address_count == 65534
    assert error.limit == 1000
    assert error.suggested_range == "10.0.0.0/24"
    assert error.range_spec == "10.0.0.0/16"


def test_one_past_the_cap_is_rejected(resolver):
    with pytest.raises(RangeTooLargeError):
        resolver.expand("10.0.0.1-10.0.3.233")


def test_overlapping_segments_are_counted_once(resolver):
    assert len(resolver.expand("192.168.0.0/23, 192.168.0.0/23")) == 510


def test_public_ranges_are_rejected_by_default(resolver):
    with pytest.raises(InvalidRangeError):
        resolver.expand("8.8.8.0/29")


def test_public_ranges_allowed_when_configured():
    resolver = RangeResolver(ScanConfig(private_ranges_only=False), auto_detector=lambda: None)
    assert resolver.expand("8.8.8.8") == ["8.8.8.8"]


@pytest.mark.parametrize("spec", ["", "   ", "abc", "192.168.1.300", "192.168.1.20-10", "192.168.1.0/33", "10.0.0.9-10.0.0.1"])
def test_invalid_specifications(resolver, spec):
    with pytest.raises(InvalidRangeError):
        resolver.expand(spec)


def test_suggest_narrower_range():
    assert suggest_narrower_range("172.16.4.9") == "172.16.4.0/24"


@pytest.mark.parametrize("spec", [None, "", "auto", " AUTO "])
def test_auto_specs(resolver, spec):
    assert resolver.is_auto(spec)
    assert len(resolver.resolve(spec)) == 254


def test_detection_failure_raises():
    resolver = RangeResolver(ScanConfig(), auto_detector=lambda: None)
    with pytest.raises(AutoDetectFailedError):
        resolver.resolve("auto")


def test_detector_exception_becomes_detection_failure():
    def broken():
        raise OSError("no interfaces")

    resolver = RangeResolver(ScanConfig(), auto_detector=broken)
    with pytest.raises(AutoDetectFailedError):
        resolver.detect()


def test_fallback_uses_default_when_detection_fails():
    resolver = RangeResolver(ScanConfig(), auto_detector=lambda: None)
    resolved = resolver.resolve_with_fallback(None, DefaultRangeConfig(default_range="10.9.9.0/30", default_auto_detect=True))
    assert resolved.fell_back is True
    assert resolved.spec == "10.9.9.0/30"
    assert resolved.addresses == ["10.9.9.1", "10.9.9.2"]


def test_fallback_uses_default_range_when_auto_detect_is_off(resolver):
    resolved = resolver.resolve_with_fallback(None, DefaultRangeConfig(default_range="10.9.9.0/30", default_auto_detect=False))
    assert resolved.auto_detected is False
    assert resolved.spec == "10.9.9.0/30"


def test_explicit_auto_detects_even_when_default_is_fixed(resolver):
    resolved = resolver.resolve_with_fallback("auto", DefaultRangeConfig(default_range="10.9.9.0/30", default_auto_detect=False))
    assert resolved.auto_detected is True
    assert resolved.spec == "192.168.7.0/24"


def test_explicit_spec_ignores_default(resolver):
    resolved = resolver.resolve_with_fallback(" 192.168.1.1 ", DefaultRangeConfig())
    assert resolved.spec == "192.168.1.1"
    assert resolved.addresses == ["192.168.1.1"]
