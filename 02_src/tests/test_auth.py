"""Tests for handshake token validation."""

import pytest
from jose import jwt

from eventhub.errors import AuthenticationError
from eventhub.realtime import TokenValidator, bearer_token

SECRET = "test-secret"


class TestTokenValidator:
    """Tests for TokenValidator."""

    def test_issue_and_decode(self):
        """Test that an issued token decodes to the same identity."""
        validator = TokenValidator(SECRET)
        token = validator.issue("U1", "T1", role="manager", employee_id="E1")

        identity = validator.decode(token)
        assert identity.user_id == "U1"
        assert identity.tenant_id == "T1"
        assert identity.role == "manager"
        assert identity.employee_id == "E1"

    def test_snake_case_and_sub_claims(self):
        """Test the alternative claim names and default role."""
        token = jwt.encode({"sub": "U9", "tenant_id": "T9", "dept": "ops"}, SECRET, algorithm="HS256")
        identity = TokenValidator(SECRET).decode(token)
        assert identity.user_id == "U9"
        assert identity.tenant_id == "T9"
        assert identity.role == "employee"
        assert identity.extra == {"dept": "ops"}

    @pytest.mark.parametrize("token", [None, "", "not-a-jwt"])
    def test_missing_or_garbage(self, token):
        """Test that missing or malformed tokens are rejected."""
        with pytest.raises(AuthenticationError):
            TokenValidator(SECRET).decode(token)

    def test_wrong_secret(self):
        """Test that a token signed with another key is rejected."""
        token = TokenValidator("other").issue("U1", "T1")
        with pytest.raises(AuthenticationError):
            TokenValidator(SECRET).decode(token)

    def test_expired(self):
        """Test that expired tokens are rejected."""
        token = TokenValidator(SECRET).issue("U1", "T1", expires_in=-10)
        with pytest.raises(AuthenticationError):
            TokenValidator(SECRET).decode(token)

    def test_missing_tenant(self):
        """Test that a token without a tenant claim is rejected."""
        token = jwt.encode({"userId": "U1"}, SECRET, algorithm="HS256")
        with pytest.raises(AuthenticationError):
            TokenValidator(SECRET).decode(token)


class TestBearerToken:
    """Tests for Authorization header parsing."""

    def test_bearer(self):
        assert bearer_token("Bearer abc.def") == "abc.def"
        assert bearer_token("bearer abc") == "abc"

    def test_other_schemes(self):
        assert bearer_token(None) is None
        assert bearer_token("Basic dXNlcg==") is None
        assert bearer_token("Bearer") is None
