from datetime import timedelta

from starlette.requests import Request

from growlokal.ratelimit import RateLimiter, client_ip, rate_key


def _request(headers=None, client=("10.0.0.9", 5123)):
    raw = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    return Request({"type": "http", "method": "GET", "path": "/", "headers": raw, "client": client})


# ── client_ip ─────────────────────────────────
def test_client_ip_prefers_first_forwarded_hop():
    req = _request({"X-Forwarded-For": "203.0.113.7, 10.1.1.1", "X-Real-IP": "198.51.100.2"})
    assert client_ip(req) == "203.0.113.7"


def test_client_ip_falls_back_to_real_ip_then_peer():
    assert client_ip(_request({"X-Real-IP": " 198.51.100.2 "})) == "198.51.100.2"
    assert client_ip(_request()) == "10.0.0.9"
    assert client_ip(_request(client=None)) == "unknown"


def test_rate_key_joins_ip_and_lowercased_email():
    assert rate_key(_request(), " Maria@Example.com ") == "10.0.0.9:maria@example.com"


# ── check ─────────────────────────────────────
async def test_login_policy_blocks_sixth_attempt(db_path, clock):
    limiter = RateLimiter(db_path, clock)

    remaining = []
    for _ in range(5):
        result = await limiter.check("1.1.1.1:a@b.c", "login")
        assert result.allowed
        remaining.append(result.remaining)
    assert remaining == [4, 3, 2, 1, 0]

    blocked = await limiter.check("1.1.1.1:a@b.c", "login")
    assert not blocked.allowed
    assert blocked.remaining == 0
    assert blocked.reset_in == 30 * 60
    assert blocked.message == "Rate limit exceeded. You have been blocked for 30 minutes."


async def test_register_policy_blocks_fourth_attempt_until_reset(db_path, clock):
    limiter = RateLimiter(db_path, clock)
    for _ in range(3):
        assert (await limiter.check("1.1.1.1:a@b.c", "register")).allowed

    blocked = await limiter.check("1.1.1.1:a@b.c", "register")
    assert not blocked.allowed
    assert blocked.reset_at == clock() + timedelta(minutes=60)

    await limiter.reset("1.1.1.1:a@b.c", "register")
    after = await limiter.check("1.1.1.1:a@b.c", "register")
    assert after.allowed
    assert after.remaining == 2


async def test_block_persists_until_expiry_then_window_restarts(db_path, clock):
    limiter = RateLimiter(db_path, clock)
    for _ in range(6):
        await limiter.check("k", "login")

    clock.advance(minutes=10)
    still = await limiter.check("k", "login")
    assert not still.allowed
    assert still.reset_in == 20 * 60
    assert still.message.startswith("Too many attempts. Please try again after")

    clock.advance(minutes=21)
    fresh = await limiter.check("k", "login")
    assert fresh.allowed
    assert fresh.remaining == 4


async def test_window_elapsed_resets_counter(db_path, clock):
    limiter = RateLimiter(db_path, clock)
    for _ in range(3):
        await limiter.check("k", "register")

    clock.advance(minutes=61)
    result = await limiter.check("k", "register")
    assert result.allowed
    assert result.remaining == 2
    record = await limiter.get("k", "register")
    assert record.attempts == 1


async def test_keys_and_endpoints_are_independent(db_path, clock):
    limiter = RateLimiter(db_path, clock)
    for _ in range(4):
        await limiter.check("k", "forgot-password")
    assert not (await limiter.check("k", "forgot-password")).allowed
    assert (await limiter.check("other", "forgot-password")).allowed
    assert (await limiter.check("k", "resend-verification")).allowed


async def test_unknown_endpoint_is_unlimited(db_path, clock):
    result = await RateLimiter(db_path, clock).check("k", "search")
    assert result.allowed
    assert result.remaining == 999
    assert result.reset_at is None


async def test_reset_forgets_the_record(db_path, clock):
    limiter = RateLimiter(db_path, clock)
    for _ in range(6):
        await limiter.check("k", "login")
    await limiter.reset("k", "login")

    assert await limiter.get("k", "login") is None
    assert (await limiter.check("k", "login")).remaining == 4


async def test_purge_expired_removes_old_records(db_path, clock):
    limiter = RateLimiter(db_path, clock)
    await limiter.check("old", "login")
    clock.advance(hours=25)
    await limiter.check("new", "login")  # also sweeps

    assert await limiter.get("old", "login") is None
    assert await limiter.get("new", "login") is not None

    clock.advance(hours=25)
    assert await limiter.purge_expired() == 1


async def test_store_failure_fails_open(tmp_path, clock):
    # A directory can't be opened as a database file
    limiter = RateLimiter(str(tmp_path), clock)
    result = await limiter.check("k", "login")
    assert result.allowed
    assert result.remaining == 999
