"""
Tests for webhook URL SSRF protection.

DNS is replaced by a fake resolver so no test touches the network.
"""

import socket

import pytest

from ssrf_protection import is_private_ip, validate_url_for_ssrf


def resolver_for(*addresses):
    def resolve(host, port):
        return [(socket.AF_INET, socket.SOCK_STREAM, 6, "", (ip, port)) for ip in addresses]

    return resolve


def failing_resolver(host, port):
    raise socket.gaierror("Name or service not known")


class TestIsPrivateIp:
    """Tests for blocked address ranges."""

    @pytest.mark.parametrize(
        "ip", ["10.1.2.3", "172.16.0.1", "192.168.1.1", "127.0.0.1", "169.254.169.254", "::1"]
    )
    def test_private_addresses(self, ip):
        assert is_private_ip(ip) is True

    @pytest.mark.parametrize("ip", ["8.8.8.8", "2606:4700::1111", "not-an-ip"])
    def test_public_or_invalid(self, ip):
        assert is_private_ip(ip) is False


class TestValidateUrl:
    """Tests for validate_url_for_ssrf."""

    def test_public_https_url(self):
        result = validate_url_for_ssrf("https://hooks.example.com/royalty", resolver_for("93.184.216.34"))
        assert result == (True, None)

    @pytest.mark.parametrize("url", ["ftp://example.com/x", "file:///etc/passwd", "javascript:alert(1)"])
    def test_rejects_non_http_schemes(self, url):
        valid, reason = validate_url_for_ssrf(url, resolver_for("93.184.216.34"))
        assert valid is False
        assert "scheme" in reason

    @pytest.mark.parametrize(
        "url",
        [
            "http://localhost:8080/hook",
            "http://metadata.google.internal/computeMetadata",
            "http://service.internal/hook",
        ],
    )
    def test_rejects_blocked_hosts(self, url):
        valid, reason = validate_url_for_ssrf(url, resolver_for("93.184.216.34"))
        assert valid is False
        assert "blocked" in reason

    def test_rejects_literal_private_ip(self):
        valid, _ = validate_url_for_ssrf("http://192.168.0.10/hook", resolver_for("93.184.216.34"))
        assert valid is False

    def test_rejects_host_resolving_to_private_ip(self):
        """A public-looking name that resolves inward is refused."""
        valid, reason = validate_url_for_ssrf(
            "https://sneaky.example.com/hook", resolver_for("93.184.216.34", "10.0.0.5")
        )
        assert valid is False
        assert "internal IP" in reason

    def test_rejects_unresolvable_host(self):
        valid, reason = validate_url_for_ssrf("https://nowhere.example/hook", failing_resolver)
        assert valid is False
        assert reason.startswith("DNS resolution failed")

    @pytest.mark.parametrize("url", ["", None, "https:///path-only"])
    def test_rejects_missing_url_or_host(self, url):
        assert validate_url_for_ssrf(url, resolver_for("93.184.216.34"))[0] is False
