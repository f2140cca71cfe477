"""Unit tests for allow/deny list evaluation."""

import pytest

from gatekeeper.core.errors import InvalidIdentityError
from gatekeeper.services.access_lists import (
    AccessClass,
    AccessListEvaluator,
    compile_rules,
    is_ip_in_range,
    is_ip_listed,
    parse_cidr,
    parse_ipv4,
)


class TestCidrMatching:
    """Test IPv4 range membership."""

    @pytest.mark.parametrize(
        "ip, cidr, expected",
        [
            ("10.1.2.3", "10.0.0.0/8", True),
            ("11.0.0.1", "10.0.0.0/8", False),
            ("192.168.1.255", "192.168.1.0/24", True),
            ("192.168.2.0", "192.168.1.0/24", False),
            ("8.8.8.8", "0.0.0.0/0", True),
            ("1.2.3.4", "1.2.3.4/32", True),
            ("1.2.3.5", "1.2.3.4/32", False),
        ],
    )
    def test_membership(self, ip: str, cidr: str, expected: bool) -> None:
        assert is_ip_in_range(ip, cidr) is expected

    def test_host_bits_in_base_are_ignored(self) -> None:
        assert is_ip_in_range("10.0.0.9", "10.0.0.5/24") is True

    @pytest.mark.parametrize(
        "ip, cidr",
        [
            ("not-an-ip", "10.0.0.0/8"),
            ("10.0.0.1", "10.0.0.0/33"),
            ("10.0.0.1", "10.0.0.0/-1"),
            ("10.0.0.1", "10.0.0/8"),
            ("10.0.0.1", "10.0.0.0"),
            ("", "10.0.0.0/8"),
        ],
    )
    def test_invalid_input_never_matches(self, ip: str, cidr: str) -> None:
        assert is_ip_in_range(ip, cidr) is False

    def test_ipv4_mapped_address_matches_range(self) -> None:
        assert is_ip_in_range("::ffff:10.1.1.1", "10.0.0.0/8") is True


class TestParsing:
    """Test strict parsers."""

    def test_parse_ipv4_rejects_out_of_range_octet(self) -> None:
        with pytest.raises(InvalidIdentityError) as exc_info:
            parse_ipv4("256.1.1.1")
        assert exc_info.value.code == "invalid_ip"

    def test_parse_cidr_rejects_missing_prefix(self) -> None:
        with pytest.raises(InvalidIdentityError) as exc_info:
            parse_cidr("10.0.0.0")
        assert exc_info.value.code == "invalid_cidr"

    def test_parse_cidr_accepts_zero_prefix(self) -> None:
        assert parse_cidr("0.0.0.0/0").num_addresses == 2**32


class TestCompiledRules:
    """Test rule compilation from configured entries."""

    def test_exact_and_range_entries(self) -> None:
        rules = compile_rules(["198.51.100.7", "203.0.113.0/24", " "])

        assert len(rules) == 2
        assert is_ip_listed("198.51.100.7", rules) is True
        assert is_ip_listed("203.0.113.50", rules) is True
        assert is_ip_listed("198.51.100.8", rules) is False

    def test_malformed_entry_never_matches(self) -> None:
        rules = compile_rules(["10.0.0.0/40"])

        assert rules[0].valid is False
        assert is_ip_listed("10.0.0.1", rules) is False

    def test_exact_entry_accepts_mapped_form(self) -> None:
        rules = compile_rules(["127.0.0.1"])

        assert is_ip_listed("::ffff:127.0.0.1", rules) is True

    def test_missing_ip_is_not_listed(self) -> None:
        assert is_ip_listed(None, compile_rules(["127.0.0.1"])) is False


class TestEvaluator:
    """Test request classification and precedence."""

    def test_blacklisted_range(self, evaluator: AccessListEvaluator) -> None:
        assert evaluator.is_blacklisted("203.0.113.9") is True
        assert evaluator.classify("203.0.113.9") is AccessClass.DENY_LISTED

    def test_blacklist_beats_whitelist(self) -> None:
        evaluator = AccessListEvaluator(
            internal_ips=["10.0.0.0/8"],
            blacklist_ips=["10.0.0.5"],
        )

        assert evaluator.classify("10.0.0.5") is AccessClass.DENY_LISTED
        assert evaluator.classify("10.0.0.6") is AccessClass.ALLOW_LISTED

    def test_blacklist_beats_admin_role(self, evaluator: AccessListEvaluator) -> None:
        assert evaluator.classify("198.51.100.7", role="admin") is AccessClass.DENY_LISTED

    def test_internal_and_admin_ips_allowed(self, evaluator: AccessListEvaluator) -> None:
        assert evaluator.classify("10.20.30.40") is AccessClass.ALLOW_LISTED
        assert evaluator.classify("192.168.1.100") is AccessClass.ALLOW_LISTED

    def test_admin_role_allowed_from_any_ip(self, evaluator: AccessListEvaluator) -> None:
        assert evaluator.is_whitelisted("8.8.8.8", role="admin") is True
        assert evaluator.is_whitelisted("8.8.8.8", role="user") is False

    def test_unlisted(self, evaluator: AccessListEvaluator) -> None:
        assert evaluator.classify("8.8.8.8") is AccessClass.UNLISTED

    def test_garbage_ip_is_unlisted(self, evaluator: AccessListEvaluator) -> None:
        assert evaluator.classify("not-an-ip") is AccessClass.UNLISTED
