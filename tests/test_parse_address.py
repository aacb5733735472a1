"""
Tests for address parsing and normalization in discovery.service.
"""

import pytest

from config import DEFAULT_PORT
from discovery.service import normalize_host, parse_address


class TestParseAddress:

    @pytest.mark.parametrize("address, expected", [
        ("192.168.1.5:1716", ("192.168.1.5", 1716)),
        ("192.168.1.5:1800", ("192.168.1.5", 1800)),
        ("192.168.1.5", ("192.168.1.5", DEFAULT_PORT)),
        ("192.168.1.5:abc", ("192.168.1.5", DEFAULT_PORT)),
        ("192.168.1.5:", ("192.168.1.5", DEFAULT_PORT)),
        ("192.168.1.5:70000", ("192.168.1.5", DEFAULT_PORT)),
        ("[fe80::1]:1800", ("fe80::1", 1800)),
        ("[fe80::1]", ("fe80::1", DEFAULT_PORT)),
        ("fe80::1", ("fe80::1", DEFAULT_PORT)),
        (("10.0.0.2", 1739), ("10.0.0.2", 1739)),
        (("10.0.0.2", "x"), ("10.0.0.2", DEFAULT_PORT)),
        (("10.0.0.2",), ("10.0.0.2", DEFAULT_PORT)),
    ])
    def test_parse(self, address, expected):
        assert parse_address(address) == expected


class TestNormalizeHost:

    def test_ipv4_mapped(self):
        assert normalize_host("::ffff:192.168.1.5") == "192.168.1.5"

    def test_scope_id_removed(self):
        assert normalize_host("fe80::1%eth0") == "fe80::1"

    def test_plain_hosts_unchanged(self):
        assert normalize_host("10.0.0.2") == "10.0.0.2"
        assert normalize_host("localhost") == "localhost"
