from __future__ import annotations

from conftest import ADMIN_PASSWORD, CRON_SECRET


def test_user_token_roundtrip_and_tamper():
    from core.auth import make_user_token, verify_user_token

    tok = make_user_token("s3cret", 7, 2, ttl_seconds=60)
    payload = verify_user_token("s3cret", tok)
    assert payload is not None
    assert payload["uid"] == 7 and payload["sv"] == 2 and payload["typ"] == "user"

    body, sig = tok.split(".")
    assert verify_user_token("s3cret", body + "." + sig[::-1]) is None
    assert verify_user_token("other-secret", tok) is None
    assert verify_user_token("s3cret", "garbage") is None


def test_expired_token_rejected():
    from core.auth import make_user_token, verify_user_token

    tok = make_user_token("s3cret", 1, 1, ttl_seconds=-10)
    assert verify_user_token("s3cret", tok) is None


def test_token_types_are_not_interchangeable():
    from core.auth import make_admin_token, make_user_token, verify_admin_token, verify_user_token

    admin = make_admin_token("s3cret")
    user = make_user_token("s3cret", 1, 1)
    assert verify_admin_token("s3cret", admin) is not None
    assert verify_user_token("s3cret", admin) is None
    assert verify_admin_token("s3cret", user) is None


def test_opaque_token_hash_is_stable():
    from core.auth import hash_opaque_token, new_opaque_token

    raw, hashed = new_opaque_token()
    assert hashed == hash_opaque_token(raw)
    assert raw not in hashed
    assert len(hashed) == 64


def test_extract_token_precedence():
    from core.services.auth import extract_token

    assert extract_token("Bearer abc", None) == "abc"
    assert extract_token("Bearer abc", "hdr") == "hdr"
    assert extract_token("Bearer abc", "hdr", "cookie") == "cookie"
    assert extract_token("Basic xyz", None) is None
    assert extract_token(None, "  ", None) is None


def test_session_version_revokes_tokens(owner, auth_db):
    from core.services.auth import authenticate_user, issue_user_token
    from core.services import users as user_service

    user, _ = owner
    tok = issue_user_token(user)
    assert authenticate_user(auth_db, tok).id == user.id
    user_service.logout_all(auth_db, user)
    assert authenticate_user(auth_db, tok) is None
    assert authenticate_user(auth_db, issue_user_token(user)).id == user.id


def test_disabled_user_token_rejected(owner, auth_db):
    from core.services.auth import authenticate_user, issue_user_token

    user, _ = owner
    tok = issue_user_token(user)
    user.is_active = False
    auth_db.commit()
    assert authenticate_user(auth_db, tok) is None


def test_admin_password_plain_and_hashed(monkeypatch):
    from werkzeug.security import generate_password_hash

    from core.services.auth import verify_admin_password
    from core.settings import reset_settings_cache

    assert verify_admin_password(ADMIN_PASSWORD)
    assert not verify_admin_password("wrong")
    assert not verify_admin_password("")

    monkeypatch.setenv("ADMIN_PASSWORD", generate_password_hash("hashed-pass"))
    reset_settings_cache()
    assert verify_admin_password("hashed-pass")
    assert not verify_admin_password(ADMIN_PASSWORD)

    monkeypatch.setenv("ADMIN_PASSWORD", "")
    reset_settings_cache()
    assert not verify_admin_password("")
    assert not verify_admin_password("anything")


def test_cron_secret():
    from core.services.auth import verify_cron_secret

    assert verify_cron_secret(f"Bearer {CRON_SECRET}")
    assert not verify_cron_secret("Bearer nope")
    assert not verify_cron_secret(CRON_SECRET)
    assert not verify_cron_secret(None)


def test_login_attempts_are_limited(monkeypatch):
    import pytest

    from core.errors import RateLimited
    from core.rate_limit import reset_rate_limiter
    from core.services.auth import clear_login_attempts, guard_login_attempt
    from core.settings import reset_settings_cache

    monkeypatch.setenv("LOGIN_RL_MAX", "3")
    reset_settings_cache()
    reset_rate_limiter()
    for _ in range(3):
        guard_login_attempt("login:test")
    with pytest.raises(RateLimited):
        guard_login_attempt("login:test")
    clear_login_attempts("login:test")
    guard_login_attempt("login:test")
