"""Unit tests for API key authentication module."""

from types import SimpleNamespace
from unittest.mock import patch

import pytest
from fastapi import HTTPException

from throttle.core.auth import (
    ApiPrincipal,
    parse_api_keys,
    principal_id_for,
    validate_api_key,
    verify_api_key,
)
from throttle.core.errors import AuthenticationAppError


def _request() -> SimpleNamespace:
    return SimpleNamespace(state=SimpleNamespace())


class TestParseAPIKeys:
    """Test API key parsing utility function."""

    def test_parse_single_key(self) -> None:
        assert parse_api_keys("my-secret-key") == {"my-secret-key": None}

    def test_parse_keys_with_tiers(self) -> None:
        result = parse_api_keys("key1:performance,key2,key3:transformation")
        assert result == {"key1": "performance", "key2": None, "key3": "transformation"}

    def test_parse_keys_with_whitespace(self) -> None:
        result = parse_api_keys(" key1 : performance ,  key2  ")
        assert result == {"key1": "performance", "key2": None}

    @pytest.mark.parametrize("value", [None, "", "   ,  ,  ", ":performance"])
    def test_parse_empty_input_returns_empty_mapping(self, value) -> None:
        assert parse_api_keys(value) == {}

    def test_duplicate_keys_keep_last_tier(self) -> None:
        assert parse_api_keys("k:foundation,k:performance") == {"k": "performance"}


class TestValidateAPIKey:
    """Test core API key validation logic."""

    @patch("throttle.core.auth.settings")
    def test_validate_raises_when_no_keys_configured(self, mock_settings) -> None:
        mock_settings.app.api_keys = None

        with pytest.raises(AuthenticationAppError) as exc_info:
            validate_api_key("some-key")

        assert exc_info.value.code == "api_keys_not_configured"

    @patch("throttle.core.auth.settings")
    def test_validate_returns_principal_with_tier(self, mock_settings) -> None:
        mock_settings.app.api_keys = "valid-key-1:performance,valid-key-2"

        principal = validate_api_key("valid-key-1")

        assert principal == ApiPrincipal(
            principal_id=principal_id_for("valid-key-1"), tier="performance"
        )
        assert validate_api_key("valid-key-2").tier is None

    @patch("throttle.core.auth.settings")
    def test_principal_id_does_not_contain_key(self, mock_settings) -> None:
        mock_settings.app.api_keys = "super-secret-value"
        principal = validate_api_key("super-secret-value")
        assert "super-secret-value" not in principal.principal_id
        assert principal.principal_id == principal_id_for("super-secret-value")

    @patch("throttle.core.auth.settings")
    def test_validate_rejects_invalid_key(self, mock_settings) -> None:
        mock_settings.app.api_keys = "valid-key-1,valid-key-2"

        with pytest.raises(AuthenticationAppError) as exc_info:
            validate_api_key("invalid-key")

        assert exc_info.value.code == "invalid_api_key"

    @patch("throttle.core.auth.settings")
    def test_tier_suffix_is_not_part_of_key(self, mock_settings) -> None:
        mock_settings.app.api_keys = "key1:performance"

        with pytest.raises(AuthenticationAppError):
            validate_api_key("key1:performance")


class TestVerifyAPIKeyDependency:
    """Test FastAPI dependency for API key verification."""

    @pytest.mark.asyncio
    @patch("throttle.core.auth.settings")
    async def test_anonymous_allowed_when_auth_disabled(self, mock_settings) -> None:
        mock_settings.app.api_key_required = False
        request = _request()

        assert await verify_api_key(request, x_api_key=None) is None
        assert request.state.principal is None

    @pytest.mark.asyncio
    @patch("throttle.core.auth.settings")
    async def test_bad_key_ignored_when_auth_disabled(self, mock_settings) -> None:
        mock_settings.app.api_key_required = False
        mock_settings.app.api_keys = "valid-key"

        assert await verify_api_key(_request(), x_api_key="wrong") is None

    @pytest.mark.asyncio
    @patch("throttle.core.auth.settings")
    async def test_missing_key_raises_403(self, mock_settings) -> None:
        mock_settings.app.api_key_required = True

        with pytest.raises(HTTPException) as exc_info:
            await verify_api_key(_request(), x_api_key=None)

        assert exc_info.value.status_code == 403
        assert "Missing API key" in exc_info.value.detail

    @pytest.mark.asyncio
    @patch("throttle.core.auth.settings")
    async def test_invalid_key_raises_403(self, mock_settings) -> None:
        mock_settings.app.api_key_required = True
        mock_settings.app.api_keys = "valid-key"

        with pytest.raises(HTTPException) as exc_info:
            await verify_api_key(_request(), x_api_key="wrong")

        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    @patch("throttle.core.auth.settings")
    async def test_valid_key_stores_principal_on_request(self, mock_settings) -> None:
        mock_settings.app.api_key_required = True
        mock_settings.app.api_keys = "valid-key:transformation"
        request = _request()

        principal = await verify_api_key(request, x_api_key="valid-key")

        assert principal is not None
        assert principal.tier == "transformation"
        assert request.state.principal is principal
