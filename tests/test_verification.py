"""Unit tests for auth/verification.py -- verification code lifecycle.

Covers:
- generated codes are 5 digits in 10000..99999
- issue() overwrites the previous code (one code per user)
- verify(): check order, expiry boundary, mismatch, success consumes the code
- resend(): cooldown throttle with retry_after, unknown / verified users
- deliver(): message format and DeliveryError propagation
"""

from __future__ import annotations

import pytest

from auth.errors import (
    AlreadyVerifiedError,
    DeliveryError,
    ExpiredError,
    MismatchError,
    NotFoundError,
    ThrottledError,
)
from auth.models import User
from auth.verification import CODE_MAX, CODE_MIN, VERIFICATION_SUBJECT, generate_code

# ---------------------------------------------------------------------------
# Shared fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def user_id(store):
    return store.create_user(User(name="Alice", email="alice@example.com", hashed_password="x"))


def _wrong(code: int) -> int:
    return CODE_MIN if code != CODE_MIN else CODE_MIN + 1


# ---------------------------------------------------------------------------
# Code generation / issue
# ---------------------------------------------------------------------------


def test_generated_codes_are_five_digits():
    for _ in range(500):
        code = generate_code()
        assert CODE_MIN <= code <= CODE_MAX
        assert len(str(code)) == 5


def test_issue_stores_code(issuer, store, user_id, clock):
    code = issuer.issue(user_id)
    stored = store.get_verification(user_id)
    assert stored.code == code
    assert stored.issued_at < stored.expires_at


def test_issue_overwrites_previous_code(issuer, store, user_id):
    issuer.issue(user_id)
    second = issuer.issue(user_id)
    assert store.get_verification(user_id).code == second


# ---------------------------------------------------------------------------
# Verify
# ---------------------------------------------------------------------------


def test_verify_correct_code_marks_user_verified(issuer, store, user_id):
    code = issuer.issue(user_id)
    issuer.verify(user_id, code)
    assert store.get_by_id(user_id).is_verified
    assert store.get_verification(user_id) is None


def test_verify_accepts_string_code(issuer, store, user_id):
    code = issuer.issue(user_id)
    issuer.verify(user_id, str(code))
    assert store.get_by_id(user_id).is_verified


def test_verify_wrong_code(issuer, store, user_id):
    code = issuer.issue(user_id)
    with pytest.raises(MismatchError):
        issuer.verify(user_id, _wrong(code))
    assert not store.get_by_id(user_id).is_verified
    # A mismatch does not consume the code.
    issuer.verify(user_id, code)


def test_verify_non_ascii_digits_is_mismatch(issuer, store, user_id):
    issuer.issue(user_id)
    with pytest.raises(MismatchError):
        issuer.verify(user_id, "\u0661\u0662\u0663\u0664\u0665")
    assert not store.get_by_id(user_id).is_verified


def test_verify_unknown_user(issuer):
    with pytest.raises(NotFoundError, match="User not found"):
        issuer.verify("no-such-user", 12345)


def test_verify_without_code(issuer, user_id):
    with pytest.raises(NotFoundError, match="Verification code not found"):
        issuer.verify(user_id, 12345)


def test_verify_twice_reports_already_verified(issuer, user_id):
    code = issuer.issue(user_id)
    issuer.verify(user_id, code)
    with pytest.raises(AlreadyVerifiedError):
        issuer.verify(user_id, code)


def test_verify_just_before_expiry(issuer, store, user_id, clock):
    code = issuer.issue(user_id)
    clock.advance(minutes=59, seconds=59)
    issuer.verify(user_id, code)
    assert store.get_by_id(user_id).is_verified


def test_verify_at_expiry_is_expired(issuer, store, user_id, clock):
    code = issuer.issue(user_id)
    clock.advance(hours=1)
    with pytest.raises(ExpiredError):
        issuer.verify(user_id, code)
    assert not store.get_by_id(user_id).is_verified


def test_expiry_checked_before_match(issuer, user_id, clock):
    """An expired code reports 'expired' even when the submitted code is wrong."""
    code = issuer.issue(user_id)
    clock.advance(hours=2)
    with pytest.raises(ExpiredError):
        issuer.verify(user_id, _wrong(code))


# ---------------------------------------------------------------------------
# Resend
# ---------------------------------------------------------------------------


def test_resend_within_cooldown_is_throttled(issuer, store, user_id, clock):
    code = issuer.issue(user_id)
    clock.advance(minutes=2)
    with pytest.raises(ThrottledError) as exc_info:
        issuer.resend(user_id)
    assert exc_info.value.retry_after == 180
    assert "5 minutes" in exc_info.value.message
    assert store.get_verification(user_id).code == code


def test_resend_after_cooldown_replaces_code(issuer, store, user_id, clock):
    issuer.issue(user_id)
    old_expiry = store.get_verification(user_id).expires_at
    clock.advance(minutes=5)
    code = issuer.resend(user_id)
    stored = store.get_verification(user_id)
    assert stored.code == code
    assert stored.expires_at > old_expiry


def test_resend_after_expiry_issues_new_code(issuer, user_id, clock):
    issuer.issue(user_id)
    clock.advance(hours=3)
    code = issuer.resend(user_id)
    issuer.verify(user_id, code)


def test_resend_without_existing_code_issues_one(issuer, store, user_id):
    code = issuer.resend(user_id)
    assert store.get_verification(user_id).code == code


def test_resend_unknown_user(issuer):
    with pytest.raises(NotFoundError):
        issuer.resend("no-such-user")


def test_resend_for_verified_user(issuer, user_id):
    issuer.verify(user_id, issuer.issue(user_id))
    with pytest.raises(AlreadyVerifiedError):
        issuer.resend(user_id)


# ---------------------------------------------------------------------------
# Deliver
# ---------------------------------------------------------------------------


def test_deliver_sends_code(issuer, notifier):
    issuer.deliver("alice@example.com", 54321)
    assert notifier.sent == [("alice@example.com", VERIFICATION_SUBJECT, "Verification code: 54321")]


def test_deliver_failure_raises(issuer, notifier):
    notifier.fail = True
    with pytest.raises(DeliveryError):
        issuer.deliver("alice@example.com", 54321)
