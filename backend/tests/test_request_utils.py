"""Tests for request utility functions."""

from unittest.mock import MagicMock

from sessionguard.core.request_utils import _is_valid_ip, get_bearer_token, get_client_ip


class TestIsValidIP:
    """Tests for _is_valid_ip function."""

    def test_valid_addresses(self):
        assert _is_valid_ip("192.168.1.1") is True
        assert _is_valid_ip("::1") is True
        assert _is_valid_ip("2001:db8::1") is True

    def test_invalid_addresses(self):
        assert _is_valid_ip("") is False
        assert _is_valid_ip("not-an-ip") is False
        assert _is_valid_ip("256.1.1.1") is False
        assert _is_valid_ip("192.168.1.1:8080") is False
        assert _is_valid_ip(" 192.168.1.1") is False


def _create_mock_request(headers=None, client_host=None):
    """Create a mock FastAPI request."""
    request = MagicMock()
    headers = headers or {}
    request.headers.get = lambda key, default=None: headers.get(key, default)
    if client_host:
        request.client = MagicMock()
        request.client.host = client_host
    else:
        request.client = None
    return request


class TestGetClientIP:
    """Tests for get_client_ip function."""

    def test_x_real_ip_from_localhost(self):
        """X-Real-IP is used when the request comes from a local proxy."""
        request = _create_mock_request({"X-Real-IP": "5.6.7.8"}, client_host="127.0.0.1")

        assert get_client_ip(request) == "5.6.7.8"

    def test_x_real_ip_not_trusted_from_external(self):
        """X-Real-IP from an external peer is ignored to prevent spoofing."""
        request = _create_mock_request({"X-Real-IP": "5.6.7.8"}, client_host="9.10.11.12")

        assert get_client_ip(request) == "9.10.11.12"

    def test_x_forwarded_for_ignored(self):
        request = _create_mock_request(
            {"X-Forwarded-For": "1.2.3.4, 5.6.7.8"}, client_host="9.10.11.12"
        )

        assert get_client_ip(request) == "9.10.11.12"

    def test_invalid_x_real_ip_skipped(self):
        request = _create_mock_request({"X-Real-IP": "invalid"}, client_host="127.0.0.1")

        assert get_client_ip(request) == "127.0.0.1"

    def test_whitespace_trimmed(self):
        request = _create_mock_request({"X-Real-IP": "  2001:db8::1 "}, client_host="::1")

        assert get_client_ip(request) == "2001:db8::1"

    def test_no_ip_available(self):
        assert get_client_ip(_create_mock_request()) is None


class TestGetBearerToken:
    """Tests for get_bearer_token function."""

    def test_bearer_token(self):
        request = _create_mock_request({"Authorization": "Bearer abc.def"})
        assert get_bearer_token(request) == "abc.def"

    def test_missing_or_other_scheme(self):
        assert get_bearer_token(_create_mock_request()) is None
        assert get_bearer_token(_create_mock_request({"Authorization": "Basic dXNlcg=="})) is None
        assert get_bearer_token(_create_mock_request({"Authorization": "Bearer   "})) is None
