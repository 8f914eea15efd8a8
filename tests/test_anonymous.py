import re
from datetime import timedelta

import pytest

import anonymous
import models
from errors import AuthenticationError, AuthorizationError, ExpiredError, PlanLimitError, ValidationError
from quota import ANONYMOUS_LIMITS


def _code(fake_mailer):
    return re.search(r"\b(\d{6})\b", fake_mailer.sent[-1]["text"]).group(1)


def test_email_is_normalized():
    assert anonymous.normalize_email("  Guest@Example.COM ") == "guest@example.com"
    with pytest.raises(ValidationError):
        anonymous.normalize_email("not-an-email")


def test_capability_ids():
    first = anonymous.new_capability_id()
    assert first.startswith("anon_")
    assert models.is_anonymous_id(first)
    assert first != anonymous.new_capability_id()


def test_send_and_verify(db_session, fake_mailer):
    usage = anonymous.send_code(db_session, "Guest@Example.com", fake_mailer)
    assert usage["transfers_limit"] == ANONYMOUS_LIMITS.monthly_transfers
    assert fake_mailer.sent[-1]["to"] == "guest@example.com"

    sender = db_session.get(models.AnonymousSender, "guest@example.com")
    assert sender.code_hash and sender.code_hash != _code(fake_mailer)

    anonymous.verify_code(db_session, "guest@example.com", _code(fake_mailer))
    assert anonymous.require_verified_sender(db_session, "GUEST@example.com").email == "guest@example.com"
    # Single use
    with pytest.raises(AuthenticationError):
        anonymous.verify_code(db_session, "guest@example.com", _code(fake_mailer))


def test_unverified_sender_is_refused(db_session, fake_mailer):
    with pytest.raises(AuthorizationError):
        anonymous.require_verified_sender(db_session, "guest@example.com")
    anonymous.send_code(db_session, "guest@example.com", fake_mailer)
    with pytest.raises(AuthorizationError):
        anonymous.require_verified_sender(db_session, "guest@example.com")


def test_wrong_codes_exhaust_the_code(db_session, fake_mailer):
    anonymous.send_code(db_session, "guest@example.com", fake_mailer)
    code = _code(fake_mailer)
    wrong = f"{(int(code) + 1) % 1000000:06d}"
    for _ in range(anonymous.MAX_CODE_ATTEMPTS):
        with pytest.raises(AuthenticationError):
            anonymous.verify_code(db_session, "guest@example.com", wrong)
    with pytest.raises(AuthenticationError):
        anonymous.verify_code(db_session, "guest@example.com", code)


def test_expired_code(db_session, fake_mailer):
    anonymous.send_code(db_session, "guest@example.com", fake_mailer)
    sender = db_session.get(models.AnonymousSender, "guest@example.com")
    sender.code_expires_at = models.utcnow() - timedelta(seconds=1)
    db_session.commit()
    with pytest.raises(ExpiredError):
        anonymous.verify_code(db_session, "guest@example.com", _code(fake_mailer))


def test_limits(db_session):
    sender = models.AnonymousSender(email="guest@example.com", last_reset_at=models.utcnow())
    db_session.add(sender)
    db_session.commit()

    anonymous.check_anonymous_limits(sender, total_size=100, file_count=ANONYMOUS_LIMITS.max_files_per_transfer)
    with pytest.raises(PlanLimitError) as exc:
        anonymous.check_anonymous_limits(sender, 100, ANONYMOUS_LIMITS.max_files_per_transfer + 1)
    assert exc.value.code == "TOO_MANY_FILES"
    with pytest.raises(PlanLimitError) as exc:
        anonymous.check_anonymous_limits(sender, ANONYMOUS_LIMITS.monthly_quota + 1, 1)
    assert exc.value.code == "ANONYMOUS_QUOTA_EXCEEDED"

    anonymous.record_anonymous_usage(db_session, "guest@example.com", transfers=ANONYMOUS_LIMITS.monthly_transfers)
    db_session.refresh(sender)
    with pytest.raises(PlanLimitError) as exc:
        anonymous.check_anonymous_limits(sender, 1, 1)
    assert exc.value.code == "ANONYMOUS_LIMIT_EXCEEDED"


def test_window_resets_after_thirty_days(db_session):
    db_session.add(models.AnonymousSender(
        email="guest@example.com",
        monthly_transfers_used=10,
        monthly_quota_used=500,
        last_reset_at=models.utcnow() - timedelta(days=ANONYMOUS_LIMITS.window_days + 1),
    ))
    db_session.commit()

    sender = anonymous.get_sender(db_session, "guest@example.com")
    assert sender.monthly_transfers_used == 0
    assert sender.monthly_quota_used == 0


def test_send_code_refused_at_limit(db_session, fake_mailer):
    db_session.add(models.AnonymousSender(
        email="guest@example.com",
        monthly_transfers_used=ANONYMOUS_LIMITS.monthly_transfers,
        last_reset_at=models.utcnow(),
    ))
    db_session.commit()
    with pytest.raises(PlanLimitError):
        anonymous.send_code(db_session, "guest@example.com", fake_mailer)
    assert fake_mailer.sent == []


def test_verify_route_shapes(client, fake_mailer):
    assert client.post("/anonymous/send-code", json={"email": "bad"}).status_code == 400
    assert client.post("/anonymous/send-code", json={"email": "guest@example.com"}).status_code == 200

    bad_format = client.post("/anonymous/verify-code", json={"email": "guest@example.com", "code": "12"})
    assert bad_format.json()["code"] == "INVALID_CODE_FORMAT"

    ok = client.post("/anonymous/verify-code", json={"email": "guest@example.com", "code": _code(fake_mailer)})
    assert ok.status_code == 200
    assert ok.json()["success"] is True
