"""
Sanitizer Module Unit Tests
"""

from llm_bridge.common.sanitizer import (
    sanitize_authorization,
    sanitize_headers,
    sanitize_payload,
    sanitize_url,
)


class TestSanitizeAuthorization:
    """Authorization Sanitize Test"""

    def test_bearer_token(self):
        """Test Bearer token sanitization"""
        result = sanitize_authorization("Bearer sk-1234567890abcdef")
        assert result.startswith("Bearer sk-1")
        assert "***" in result
        assert result.endswith("ef")

    def test_short_token(self):
        assert sanitize_authorization("short") == "***"

    def test_empty_value(self):
        assert sanitize_authorization("") == ""
        assert sanitize_authorization(None) is None


class TestSanitizeHeaders:
    """Headers Sanitize Test"""

    def test_masks_provider_keys(self):
        headers = {
            "Authorization": "Bearer sk-1234567890abcdef",
            "x-api-key": "sk-ant-1234567890",
            "Content-Type": "application/json",
        }
        result = sanitize_headers(headers)
        assert "1234567890abcdef" not in result["Authorization"]
        assert "1234567890" not in result["x-api-key"]
        assert result["Content-Type"] == "application/json"
        # original untouched
        assert headers["x-api-key"] == "sk-ant-1234567890"


class TestSanitizeUrlAndPayload:
    def test_query_key(self):
        url = "https://g.example/v1beta/models/m:generateContent?alt=sse&key=AIzaSecretValue123"
        result = sanitize_url(url)
        assert "AIzaSecretValue123" not in result
        assert "alt=sse" in result

    def test_nested_payload(self):
        payload = {"metadata": {"api_key": "secret-value-1234"}, "items": [{"apiKey": "another-secret-99"}]}
        result = sanitize_payload(payload)
        assert "secret-value-1234" not in str(result)
        assert "another-secret-99" not in str(result)
