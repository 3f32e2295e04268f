"""Unit tests for authentication functions."""
import os
import time
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from jose import jwt

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")

from hallbook.auth import (
    authenticate_user,
    create_access_token,
    decode_token,
    get_password_hash,
    issue_session_token,
    read_session_claims,
    verify_password,
)
from hallbook.config import get_settings
from hallbook.errors import Unauthenticated
from hallbook.models import RoleEnum, User

settings = get_settings()


class TestPasswordHashing:
    """Test password hashing and verification."""

    def test_password_hash_and_verify(self):
        """Test that password can be hashed and verified."""
        password = "MySecurePassword123!"
        hashed = get_password_hash(password)

        assert hashed != password
        assert verify_password(password, hashed) is True
        assert verify_password("WrongPassword", hashed) is False

    def test_same_password_different_hashes(self):
        """Test that the same password generates different hashes (salt)."""
        password = "TestPassword123"
        hash1 = get_password_hash(password)
        hash2 = get_password_hash(password)

        assert hash1 != hash2
        assert verify_password(password, hash1) is True
        assert verify_password(password, hash2) is True


class TestJWTTokens:
    """Test JWT token creation and decoding."""

    def test_create_access_token(self):
        """Test JWT token creation with session claims."""
        token = create_access_token({"sub": "7", "jti": "abc"})

        decoded = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
        assert decoded["sub"] == "7"
        assert decoded["jti"] == "abc"
        assert "exp" in decoded

    def test_create_token_with_custom_expiry(self):
        """Test token creation with custom expiration."""
        token = create_access_token({"sub": "7"}, timedelta(minutes=30))

        decoded = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
        assert time.time() + 29 * 60 < decoded["exp"] <= time.time() + 30 * 60 + 5

    def test_decode_token_invalid(self):
        """Garbage tokens raise Unauthenticated."""
        with pytest.raises(Unauthenticated) as exc_info:
            decode_token("invalid.token.here")

        assert exc_info.value.status_code == 401

    def test_decode_token_expired(self):
        """Expired tokens raise Unauthenticated."""
        token = create_access_token({"sub": "7"}, timedelta(hours=-1))

        with pytest.raises(Unauthenticated):
            decode_token(token)


class TestSessionClaims:
    """Test the claims carried by session tokens."""

    def test_round_trip(self):
        claims = read_session_claims(issue_session_token(7, "abc"))

        assert claims.user_id == 7
        assert claims.session_id == "abc"

    def test_missing_session_id(self):
        with pytest.raises(Unauthenticated):
            read_session_claims(create_access_token({"sub": "7"}))

    def test_non_numeric_subject(self):
        with pytest.raises(Unauthenticated):
            read_session_claims(create_access_token({"sub": "jane", "jti": "abc"}))


class TestUserAuthentication:
    """Test user authentication logic."""

    def _user(self, password: str) -> User:
        return User(
            id=1,
            email="test@campus.edu",
            name="Test User",
            role=RoleEnum.FACULTY,
            hashed_password=get_password_hash(password),
        )

    def test_authenticate_user_success(self):
        """Test successful user authentication."""
        mock_db = MagicMock()
        mock_db.query.return_value.filter.return_value.first.return_value = self._user("TestPass123")

        result = authenticate_user(mock_db, " Test@Campus.edu ", "TestPass123")

        assert result is not None
        assert result.id == 1

    def test_authenticate_user_wrong_password(self):
        """Test authentication fails with wrong password."""
        mock_db = MagicMock()
        mock_db.query.return_value.filter.return_value.first.return_value = self._user("CorrectPassword")

        assert authenticate_user(mock_db, "test@campus.edu", "WrongPassword") is None

    def test_authenticate_user_not_found(self):
        """Test authentication fails when user doesn't exist."""
        mock_db = MagicMock()
        mock_db.query.return_value.filter.return_value.first.return_value = None

        assert authenticate_user(mock_db, "nobody@campus.edu", "anypassword") is None
