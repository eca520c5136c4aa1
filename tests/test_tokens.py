"""Token engine: access JWTs and hash-at-rest refresh tokens."""

from datetime import timedelta, timezone

import jwt
from sqlalchemy import select

from core.tokens import TokenEngine, hash_refresh_token
from models.refresh_token import RefreshToken


async def _token_rows(session, user_id):
    result = await session.execute(
        select(RefreshToken)
        .where(RefreshToken.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


class TestAccessTokens:
    async def test_round_trip_claims(self, token_engine, make_account):
        user = await make_account("EMP042", role="admin")
        token = token_engine.issue_access_token(user)

        claims = token_engine.verify_access_token(token)

        assert claims.account_id == user.id
        assert claims.employee_id == "EMP042"
        assert claims.role == "admin"

    async def test_payload_shape(self, token_engine, settings, make_account):
        user = await make_account()
        token = token_engine.issue_access_token(user)

        payload = jwt.decode(token, settings.access_token_secret, algorithms=["HS256"], options={"verify_iat": False})

        assert payload["type"] == "access"
        assert payload["userId"] == user.id
        assert payload["exp"] - payload["iat"] == 15 * 60

    async def test_expired_token_rejected(self, token_engine, make_account, clock):
        user = await make_account()
        token = token_engine.issue_access_token(user)

        clock.advance(minutes=15, seconds=1)

        assert token_engine.verify_access_token(token) is None

    async def test_still_valid_just_before_expiry(self, token_engine, make_account, clock):
        user = await make_account()
        token = token_engine.issue_access_token(user)

        clock.advance(minutes=14, seconds=59)

        assert token_engine.verify_access_token(token) is not None

    async def test_wrong_signature_rejected(self, token_engine, make_account, clock):
        user = await make_account()
        now = clock().replace(tzinfo=timezone.utc)
        forged = jwt.encode(
            {
                "sub": str(user.id),
                "userId": user.id,
                "employeeId": "EMP001",
                "role": "admin",
                "type": "access",
                "exp": int((now + timedelta(minutes=5)).timestamp()),
            },
            "not-the-server-secret-but-long-enough-for-hs256",
            algorithm="HS256",
        )
        assert token_engine.verify_access_token(forged) is None

    async def test_refresh_type_rejected_even_with_access_secret(self, token_engine, settings, clock):
        now = clock().replace(tzinfo=timezone.utc)
        token = jwt.encode(
            {
                "sub": "1",
                "userId": 1,
                "employeeId": "EMP001",
                "role": "admin",
                "type": "refresh",
                "exp": int((now + timedelta(minutes=5)).timestamp()),
            },
            settings.access_token_secret,
            algorithm="HS256",
        )
        assert token_engine.verify_access_token(token) is None

    async def test_token_signed_with_refresh_secret_rejected(self, token_engine, settings, clock):
        now = clock().replace(tzinfo=timezone.utc)
        token = jwt.encode(
            {
                "sub": "1",
                "userId": 1,
                "employeeId": "EMP001",
                "role": "admin",
                "type": "access",
                "exp": int((now + timedelta(minutes=5)).timestamp()),
            },
            settings.refresh_token_secret,
            algorithm="HS256",
        )
        assert token_engine.verify_access_token(token) is None

    async def test_refresh_secret_is_not_an_access_token(self, session, token_engine, make_account):
        user = await make_account()
        issued = await token_engine.issue_refresh_token(session, user.id)

        assert token_engine.verify_access_token(issued.token) is None

    def test_garbage_rejected(self, token_engine):
        assert token_engine.verify_access_token("not.a.jwt") is None
        assert token_engine.verify_access_token("") is None


class TestRefreshTokens:
    async def test_issue_stores_only_hash(self, session, token_engine, settings, make_account, clock):
        user = await make_account()
        issued = await token_engine.issue_refresh_token(session, user.id, "10.0.0.1", "pytest")

        assert len(issued.token) >= 64  # at least 256 bits of hex
        (row,) = await _token_rows(session, user.id)
        assert row.token_hash != issued.token
        assert issued.token not in row.token_hash
        assert row.token_hash == hash_refresh_token(issued.token, settings.refresh_token_secret)
        assert row.expires_at - clock() == timedelta(days=7)
        assert row.ip_address == "10.0.0.1"

    async def test_verify_returns_record(self, session, token_engine, make_account):
        user = await make_account()
        issued = await token_engine.issue_refresh_token(session, user.id)

        record = await token_engine.verify_refresh_token(session, issued.token)

        assert record is not None
        assert record.user_id == user.id

    async def test_presenting_the_hash_fails(self, session, token_engine, make_account):
        user = await make_account()
        await token_engine.issue_refresh_token(session, user.id)
        (row,) = await _token_rows(session, user.id)

        assert await token_engine.verify_refresh_token(session, row.token_hash) is None

    async def test_unknown_and_empty_tokens_fail(self, session, token_engine):
        assert await token_engine.verify_refresh_token(session, "deadbeef" * 16) is None
        assert await token_engine.verify_refresh_token(session, "") is None

    async def test_expired_token_fails(self, session, token_engine, make_account, clock):
        user = await make_account()
        issued = await token_engine.issue_refresh_token(session, user.id)

        clock.advance(days=7, seconds=1)

        assert await token_engine.verify_refresh_token(session, issued.token) is None

    async def test_inactive_account_fails(self, session, token_engine, make_account):
        user = await make_account(is_active=False)
        issued = await token_engine.issue_refresh_token(session, user.id)

        assert await token_engine.verify_refresh_token(session, issued.token) is None

    async def test_revoke_is_idempotent(self, session, token_engine, make_account):
        user = await make_account()
        issued = await token_engine.issue_refresh_token(session, user.id)

        assert await token_engine.revoke_refresh_token(session, issued.token) is True
        assert await token_engine.revoke_refresh_token(session, issued.token) is False
        assert await token_engine.verify_refresh_token(session, issued.token) is None

        (row,) = await _token_rows(session, user.id)
        assert row.revoked is True
        assert row.revoked_at is not None

    async def test_revoke_all_for_account(self, session, token_engine, make_account):
        alice = await make_account("EMP001")
        bob = await make_account("EMP002")
        alice_tokens = [await token_engine.issue_refresh_token(session, alice.id) for _ in range(3)]
        bob_token = await token_engine.issue_refresh_token(session, bob.id)

        assert await token_engine.active_token_count(session, alice.id) == 3
        revoked = await token_engine.revoke_all_for_account(session, alice.id)

        assert revoked == 3
        assert await token_engine.active_token_count(session, alice.id) == 0
        for issued in alice_tokens:
            assert await token_engine.verify_refresh_token(session, issued.token) is None
        assert await token_engine.verify_refresh_token(session, bob_token.token) is not None

    async def test_cleanup(self, session, token_engine, make_account, clock):
        user = await make_account()
        stale = await token_engine.issue_refresh_token(session, user.id)
        await token_engine.revoke_refresh_token(session, stale.token)
        await token_engine.issue_refresh_token(session, user.id)

        clock.advance(days=31)
        fresh = await token_engine.issue_refresh_token(session, user.id)

        # both older tokens are past expiry; the revoked one is also past retention
        assert await token_engine.cleanup_revoked(session) == 1
        assert await token_engine.cleanup_expired(session) == 1
        rows = await _token_rows(session, user.id)
        assert len(rows) == 1
        assert await token_engine.verify_refresh_token(session, fresh.token) is not None


def test_refresh_hash_depends_on_secret():
    assert hash_refresh_token("abc", "one") != hash_refresh_token("abc", "two")


def test_engine_uses_fixed_access_lifetime(settings):
    assert TokenEngine(settings).access_ttl == timedelta(minutes=15)
