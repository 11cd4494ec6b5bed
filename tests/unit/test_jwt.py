"""Unit tests for access token creation and verification."""

from datetime import timedelta

from jose import jwt

from chatforum.kernel.identity.jwt import JWTManager


class TestJWTManager:

    def test_round_trip_claims(self, jwt_manager):
        token, expires_at = jwt_manager.create_access_token(5, "alice", ["user", "admin"])

        payload = jwt_manager.verify(token)

        assert payload is not None
        assert payload.user_id == 5
        assert payload.username == "alice"
        assert payload.roles == ["admin", "user"]
        assert abs((payload.exp - expires_at).total_seconds()) < 1

    def test_tokens_are_unique(self, jwt_manager):
        first, _ = jwt_manager.create_access_token(5, "alice", [])
        second, _ = jwt_manager.create_access_token(5, "alice", [])
        assert first != second

    def test_expired_token_rejected(self, jwt_manager):
        token, _ = jwt_manager.create_access_token(5, "alice", [], expires_delta=timedelta(seconds=-5))
        assert jwt_manager.verify(token) is None

    def test_wrong_secret_rejected(self, jwt_manager):
        token, _ = jwt_manager.create_access_token(5, "alice", [])
        other = JWTManager(secret_key="another-secret-key-entirely-different!!")
        assert other.verify(token) is None

    def test_garbage_rejected(self, jwt_manager):
        assert jwt_manager.verify("not.a.token") is None

    def test_non_access_token_rejected(self, jwt_manager):
        token = jwt.encode(
            {"sub": "5", "username": "alice", "type": "refresh"},
            jwt_manager.secret_key,
            algorithm=jwt_manager.algorithm,
        )
        assert jwt_manager.verify(token) is None
