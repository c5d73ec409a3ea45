import pytest

from growlokal.auth import (
    AccountLockedError, Authenticator, EmailNotVerifiedError, EmailTakenError,
    InvalidCredentialsError, LoginRateLimitedError, WeakPasswordError, issue_session,
    reset_link, verification_link,
)
from growlokal.core.security import decode_jwt
from growlokal.lockout import INVALID_CREDENTIALS

from tests.conftest import STRONG_PASSWORD


@pytest.fixture
def auth(db_path, clock):
    return Authenticator(db_path, clock)


async def test_login_issues_short_session_by_default(auth, make_account):
    account = await make_account()

    session = await auth.login("Maria@Example.com", STRONG_PASSWORD, "1.2.3.4")
    assert session.days == 1
    assert session.account.id == account.id

    claims = decode_jwt(session.token)
    assert claims["sub"] == account.id
    assert claims["email"] == "maria@example.com"
    assert claims["email_verified"] is True

    stored = await auth.accounts.get_by_id(account.id)
    assert stored.last_login is not None


async def test_remember_me_issues_long_session(auth, make_account):
    await make_account()
    session = await auth.login("maria@example.com", STRONG_PASSWORD, "1.2.3.4", remember_me=True)
    assert session.days == 30


async def test_wrong_password_and_unknown_email_look_the_same(auth, make_account):
    await make_account()

    with pytest.raises(InvalidCredentialsError) as wrong:
        await auth.login("maria@example.com", "Wr0ng$pass", "1.2.3.4")
    with pytest.raises(InvalidCredentialsError) as unknown:
        await auth.login("ghost@example.com", STRONG_PASSWORD, "1.2.3.4")

    assert wrong.value.message == unknown.value.message == INVALID_CREDENTIALS


async def test_unverified_account_cannot_log_in(auth, make_account):
    await make_account(verified=False)
    with pytest.raises(EmailNotVerifiedError):
        await auth.login("maria@example.com", STRONG_PASSWORD, "1.2.3.4")


async def test_unverified_account_with_wrong_password_gets_generic_error(auth, make_account):
    await make_account(verified=False)
    with pytest.raises(InvalidCredentialsError):
        await auth.login("maria@example.com", "Wr0ng$pass", "1.2.3.4")


async def test_fifth_failure_locks_and_blocks_correct_password(auth, make_account):
    await make_account()
    for _ in range(4):
        with pytest.raises(InvalidCredentialsError):
            await auth.login("maria@example.com", "Wr0ng$pass", "1.2.3.4")

    with pytest.raises(AccountLockedError) as locked:
        await auth.login("maria@example.com", "Wr0ng$pass", "1.2.3.4")
    assert locked.value.retry_after == 30 * 60

    # Different IP, so the rate limiter does not interfere
    with pytest.raises(AccountLockedError):
        await auth.login("maria@example.com", STRONG_PASSWORD, "5.6.7.8")


async def test_lock_expires(auth, clock, make_account):
    await make_account()
    for n in range(5):
        with pytest.raises((InvalidCredentialsError, AccountLockedError)):
            await auth.login("maria@example.com", "Wr0ng$pass", f"10.0.0.{n}")

    clock.advance(minutes=31)
    session = await auth.login("maria@example.com", STRONG_PASSWORD, "1.2.3.4")
    assert session.token


async def test_success_forgets_earlier_failures(auth, make_account):
    await make_account()
    for _ in range(3):
        with pytest.raises(InvalidCredentialsError):
            await auth.login("maria@example.com", "Wr0ng$pass", "1.2.3.4")

    await auth.login("maria@example.com", STRONG_PASSWORD, "1.2.3.4")

    status = await auth.lockout.status("maria@example.com")
    assert status["failed_login_attempts"] == 0
    assert await auth.limiter.get("1.2.3.4:maria@example.com", "login") is None


async def test_rate_limit_runs_before_password_check(auth, make_account):
    # Unknown email never locks, so only the limiter can stop this
    for _ in range(5):
        with pytest.raises(InvalidCredentialsError):
            await auth.login("ghost@example.com", "Wr0ng$pass", "1.2.3.4")

    with pytest.raises(LoginRateLimitedError) as limited:
        await auth.login("ghost@example.com", "Wr0ng$pass", "1.2.3.4")
    assert limited.value.status == 429
    assert limited.value.result.reset_in == 30 * 60


# ── Register ──────────────────────────────────
async def test_register_creates_unverified_account(auth):
    account = await auth.register("Juan Dela Cruz", "Juan@Example.com", STRONG_PASSWORD)
    assert account.email == "juan@example.com"
    assert not account.email_verified
    assert account.password_hash != STRONG_PASSWORD


async def test_register_rejects_weak_password(auth):
    with pytest.raises(WeakPasswordError) as weak:
        await auth.register("Juan", "juan@example.com", "password")
    assert len(weak.value.problems) == 3
    assert await auth.accounts.get_by_email("juan@example.com") is None


async def test_register_rejects_taken_email(auth, make_account):
    await make_account()
    with pytest.raises(EmailTakenError) as taken:
        await auth.register("Maria", "MARIA@example.com", STRONG_PASSWORD)
    assert taken.value.status == 409


# ── Helpers ───────────────────────────────────
async def test_issue_session_claims(make_account):
    account = await make_account()
    session = issue_session(account, remember_me=True)
    assert session.claims == {
        "sub":            account.id,
        "email":          "maria@example.com",
        "email_verified": True,
    }


def test_links_escape_email():
    assert verification_link("a+b@example.com", "tok").endswith("/verify-email?token=tok&email=a%2Bb%40example.com")
    assert "/reset-password?token=tok&email=" in reset_link("a@example.com", "tok")
