"""Tests for session and cron authentication dependencies."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials
from jose import jwt

from middleware.auth import decode_session_token, get_session_user, verify_cron_caller

SECRET = "unit-test-secret"


def make_token(secret: str = SECRET, audience: str = "authenticated", **claims) -> str:
    payload = {
        "sub": "user-1",
        "email": "creator@example.com",
        "aud": audience,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=5),
        **claims,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def mock_session_settings(mock_settings: MagicMock) -> None:
    mock_settings.session_jwt_secret = SECRET
    mock_settings.jwt_algorithm = "HS256"
    mock_settings.jwt_audience = "authenticated"


class TestDecodeSessionToken:
    """Tests for decode_session_token."""

    def test_valid_token(self) -> None:
        with patch("middleware.auth.settings") as mock_settings:
            mock_session_settings(mock_settings)
            user = decode_session_token(make_token())

        assert user.user_id == "user-1"
        assert user.email == "creator@example.com"

    def test_wrong_secret(self) -> None:
        with patch("middleware.auth.settings") as mock_settings:
            mock_session_settings(mock_settings)
            assert decode_session_token(make_token(secret="other")) is None

    def test_wrong_audience(self) -> None:
        with patch("middleware.auth.settings") as mock_settings:
            mock_session_settings(mock_settings)
            assert decode_session_token(make_token(audience="anon")) is None

    def test_expired(self) -> None:
        expired = datetime.now(timezone.utc) - timedelta(minutes=1)
        with patch("middleware.auth.settings") as mock_settings:
            mock_session_settings(mock_settings)
            assert decode_session_token(make_token(exp=expired)) is None

    def test_unconfigured_secret_rejects_everything(self) -> None:
        with patch("middleware.auth.settings") as mock_settings:
            mock_settings.session_jwt_secret = ""
            assert decode_session_token(make_token()) is None


class TestGetSessionUser:
    @pytest.mark.asyncio
    async def test_missing_credentials(self) -> None:
        with pytest.raises(HTTPException) as exc_info:
            await get_session_user(None)

        assert exc_info.value.status_code == 401
        assert exc_info.value.detail == "missing_auth"

    @pytest.mark.asyncio
    async def test_invalid_token(self) -> None:
        credentials = HTTPAuthorizationCredentials(scheme="Bearer", credentials="not-a-jwt")
        with patch("middleware.auth.settings") as mock_settings:
            mock_session_settings(mock_settings)
            with pytest.raises(HTTPException) as exc_info:
                await get_session_user(credentials)

        assert exc_info.value.status_code == 401


class TestVerifyCronCaller:
    """Tests for verify_cron_caller."""

    @pytest.fixture
    def mock_request(self) -> MagicMock:
        request = MagicMock()
        request.headers = {}
        request.url.path = "/sync/media"
        return request

    @pytest.mark.asyncio
    async def test_secret_header(self, mock_request: MagicMock) -> None:
        with patch("middleware.auth.settings") as mock_settings:
            mock_settings.cron_secret = "s3cret"
            mock_settings.trust_cron_marker_header = False

            assert await verify_cron_caller(mock_request, "s3cret", None) == "x-cron-secret"

    @pytest.mark.asyncio
    async def test_bearer_secret(self, mock_request: MagicMock) -> None:
        with patch("middleware.auth.settings") as mock_settings:
            mock_settings.cron_secret = "s3cret"
            mock_settings.trust_cron_marker_header = False

            assert await verify_cron_caller(mock_request, None, "Bearer s3cret") == "bearer"

    @pytest.mark.asyncio
    async def test_marker_header_only_when_trusted(self, mock_request: MagicMock) -> None:
        mock_request.headers = {"x-vercel-cron": "1"}
        with patch("middleware.auth.settings") as mock_settings:
            mock_settings.cron_secret = "s3cret"
            mock_settings.cron_marker_header = "x-vercel-cron"

            mock_settings.trust_cron_marker_header = True
            assert await verify_cron_caller(mock_request, None, None) == "marker-header"

            mock_settings.trust_cron_marker_header = False
            with pytest.raises(HTTPException) as exc_info:
                await verify_cron_caller(mock_request, None, None)
            assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_wrong_secret_rejected(self, mock_request: MagicMock) -> None:
        with patch("middleware.auth.settings") as mock_settings:
            mock_settings.cron_secret = "s3cret"
            mock_settings.trust_cron_marker_header = False

            with pytest.raises(HTTPException) as exc_info:
                await verify_cron_caller(mock_request, "guess", "Bearer guess")

        assert exc_info.value.status_code == 401
        assert exc_info.value.detail == "unauthorized"

    @pytest.mark.asyncio
    async def test_unset_secret_rejects_empty_values(self, mock_request: MagicMock) -> None:
        with patch("middleware.auth.settings") as mock_settings:
            mock_settings.cron_secret = ""
            mock_settings.trust_cron_marker_header = False

            with pytest.raises(HTTPException):
                await verify_cron_caller(mock_request, "", "Bearer ")
