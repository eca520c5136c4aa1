"""OTP engine: code generation, verification outcomes, attempt ceiling, cleanup."""

import asyncio

from sqlalchemy import func, select

from core import credential_store as store
from core.otp import OtpStatus, generate_code
from core.rate_limit import otp_identifier
from models.otp_code import OtpCode, OtpState
from models.rate_limit import OtpRateLimit


def _wrong(code: str) -> str:
    return "000000" if code != "000000" else "111111"


async def _otp_rows(session, user_id):
    result = await session.execute(
        select(OtpCode)
        .where(OtpCode.user_id == user_id)
        .order_by(OtpCode.id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


class TestGenerateCode:
    def test_code_is_six_digits(self):
        for _ in range(200):
            code = generate_code()
            assert len(code) == 6
            assert code.isdigit()

    def test_codes_vary(self):
        assert len({generate_code() for _ in range(50)}) > 1


class TestCreateOtp:
    async def test_create_stores_row_with_expiry(self, session, otp_engine, make_account, clock):
        user = await make_account()
        issued = await otp_engine.create_otp(session, user.id, "10.0.0.1", "pytest")

        rows = await _otp_rows(session, user.id)
        assert len(rows) == 1
        row = rows[0]
        assert row.code == issued.code
        assert row.used is False
        assert row.failed_attempts == 0
        assert row.ip_address == "10.0.0.1"
        assert row.user_agent == "pytest"
        assert (issued.expires_at - clock()).total_seconds() == 10 * 60

    async def test_create_always_succeeds_even_with_live_codes(self, session, otp_engine, make_account):
        user = await make_account()
        for _ in range(4):
            await otp_engine.create_otp(session, user.id)
        assert len(await _otp_rows(session, user.id)) == 4


class TestVerifyOtp:
    async def test_correct_code_is_valid(self, session, otp_engine, make_account):
        user = await make_account()
        issued = await otp_engine.create_otp(session, user.id)

        result = await otp_engine.verify_otp(session, user.id, issued.code)

        assert result.valid
        assert result.status is OtpStatus.VALID

    async def test_code_is_single_use(self, session, otp_engine, make_account):
        user = await make_account()
        issued = await otp_engine.create_otp(session, user.id)

        assert (await otp_engine.verify_otp(session, user.id, issued.code)).valid
        second = await otp_engine.verify_otp(session, user.id, issued.code)

        assert not second.valid
        assert second.status is OtpStatus.EXPIRED

    async def test_no_code_reports_expired(self, session, otp_engine, make_account):
        user = await make_account()
        result = await otp_engine.verify_otp(session, user.id, "123456")
        assert result.status is OtpStatus.EXPIRED

    async def test_expired_code_rejected(self, session, otp_engine, make_account, clock):
        user = await make_account()
        issued = await otp_engine.create_otp(session, user.id)

        clock.advance(minutes=10, seconds=1)
        result = await otp_engine.verify_otp(session, user.id, issued.code)

        assert result.status is OtpStatus.EXPIRED

    async def test_wrong_code_counts_down(self, session, otp_engine, make_account):
        user = await make_account()
        issued = await otp_engine.create_otp(session, user.id)

        first = await otp_engine.verify_otp(session, user.id, _wrong(issued.code))
        second = await otp_engine.verify_otp(session, user.id, _wrong(issued.code))

        assert first.status is OtpStatus.INVALID_CODE
        assert first.attempts_remaining == 2
        assert second.status is OtpStatus.INVALID_CODE
        assert second.attempts_remaining == 1

    async def test_third_failure_locks_code(self, session, otp_engine, make_account, clock):
        user = await make_account()
        issued = await otp_engine.create_otp(session, user.id)

        for _ in range(2):
            await otp_engine.verify_otp(session, user.id, _wrong(issued.code))
        third = await otp_engine.verify_otp(session, user.id, _wrong(issued.code))

        assert third.status is OtpStatus.MAX_ATTEMPTS
        (row,) = await _otp_rows(session, user.id)
        assert row.used is True
        assert row.failed_attempts == 3
        assert row.state(clock(), 3) is OtpState.LOCKED

    async def test_correct_code_after_lockout_still_fails(self, session, otp_engine, make_account):
        user = await make_account()
        issued = await otp_engine.create_otp(session, user.id)

        for _ in range(3):
            await otp_engine.verify_otp(session, user.id, _wrong(issued.code))
        fourth = await otp_engine.verify_otp(session, user.id, issued.code)

        assert fourth.status is OtpStatus.MAX_ATTEMPTS
        assert not fourth.valid

    async def test_comparison_is_exact(self, session, otp_engine, make_account):
        user = await make_account()
        issued = await otp_engine.create_otp(session, user.id)

        result = await otp_engine.verify_otp(session, user.id, f" {issued.code}")

        assert result.status is OtpStatus.INVALID_CODE

    async def test_success_retires_older_codes(self, session, otp_engine, make_account, clock):
        user = await make_account()
        older = await otp_engine.create_otp(session, user.id)
        clock.advance(seconds=5)
        newer = await otp_engine.create_otp(session, user.id)

        assert (await otp_engine.verify_otp(session, user.id, newer.code)).valid
        replay = await otp_engine.verify_otp(session, user.id, older.code)

        assert not replay.valid
        rows = await _otp_rows(session, user.id)
        assert all(r.used for r in rows)

    async def test_verification_targets_latest_code(
        self, session, otp_engine, make_account, clock, monkeypatch
    ):
        codes = iter(["111111", "222222"])
        monkeypatch.setattr("core.otp.generate_code", lambda: next(codes))
        user = await make_account()
        older = await otp_engine.create_otp(session, user.id)
        clock.advance(seconds=5)
        await otp_engine.create_otp(session, user.id)

        result = await otp_engine.verify_otp(session, user.id, older.code)

        assert result.status is OtpStatus.INVALID_CODE

    async def test_codes_are_scoped_per_account(self, session, otp_engine, make_account):
        alice = await make_account("EMP001")
        bob = await make_account("EMP002")
        issued = await otp_engine.create_otp(session, alice.id)

        result = await otp_engine.verify_otp(session, bob.id, issued.code)

        assert result.status is OtpStatus.EXPIRED

    async def test_concurrent_correct_submissions_succeed_once(self, app, otp_engine, make_account):
        user = await make_account()
        async with app.state.sessionmaker() as s:
            issued = await otp_engine.create_otp(s, user.id)

        async with app.state.sessionmaker() as s1, app.state.sessionmaker() as s2:
            results = await asyncio.gather(
                otp_engine.verify_otp(s1, user.id, issued.code),
                otp_engine.verify_otp(s2, user.id, issued.code),
            )

        assert sorted(r.status.value for r in results) == ["expired", "valid"]

    async def test_losing_consume_leaves_loaded_row_usable(self, app, session, otp_engine, make_account):
        user = await make_account()
        issued = await otp_engine.create_otp(session, user.id)
        (row,) = await _otp_rows(session, user.id)

        async with app.state.sessionmaker() as other:
            assert (await otp_engine.verify_otp(other, user.id, issued.code)).valid

        assert await store.consume_otp(session, row.id, user.id, 0) is False
        # still loaded: no lazy refresh needed to read it
        assert row.code == issued.code


class TestOtpState:
    async def test_states(self, session, otp_engine, make_account, clock):
        user = await make_account()
        await otp_engine.create_otp(session, user.id)
        (row,) = await _otp_rows(session, user.id)

        assert row.state(clock(), 3) is OtpState.PENDING
        row.used = True
        assert row.state(clock(), 3) is OtpState.CONSUMED
        row.used = False
        clock.advance(minutes=11)
        assert row.state(clock(), 3) is OtpState.EXPIRED


class TestCleanup:
    async def test_cleanup_removes_only_expired(self, session, otp_engine, make_account, clock):
        user = await make_account()
        await otp_engine.create_otp(session, user.id)
        clock.advance(minutes=11)
        await otp_engine.create_otp(session, user.id)

        deleted = await otp_engine.cleanup_expired(session)

        assert deleted == 1
        assert len(await _otp_rows(session, user.id)) == 1

    async def test_rate_limit_cleanup(self, session, otp_engine, clock):
        identifier = otp_identifier("EMP001", "127.0.0.1")
        await otp_engine.increment_rate_limit(session, identifier)
        clock.advance(minutes=16)
        await otp_engine.increment_rate_limit(session, otp_identifier("EMP002", "127.0.0.1"))

        deleted = await otp_engine.cleanup_rate_limits(session)

        assert deleted == 1
        remaining = await session.execute(select(func.count()).select_from(OtpRateLimit))
        assert remaining.scalar_one() == 1
