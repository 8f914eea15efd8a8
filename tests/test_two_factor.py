import time
from datetime import timedelta

import pyotp
import pytest

import models
from encryption import is_sealed, open_secret
from errors import AuthenticationError, AuthorizationError, ExpiredError, ValidationError
from two_factor import (
    TwoFactorService, consume_backup_code, generate_backup_codes, hash_backup_code,
    load_backup_codes, verify_totp,
)


def _wrong_code(secret):
    totp = pyotp.TOTP(secret)
    valid = {totp.at(time.time() + offset) for offset in (-60, -30, 0, 30, 60)}
    return next(c for c in (f"{d}" * 6 for d in range(10)) if c not in valid)


def _enable(db_session, user):
    service = TwoFactorService(db_session)
    challenge = service.begin_setup(user)
    codes = service.confirm_setup(user, challenge.session_id, pyotp.TOTP(challenge.secret).now())
    return challenge.secret, codes


def test_verify_totp_accepts_current_code():
    secret = pyotp.random_base32()
    assert verify_totp(secret, pyotp.TOTP(secret).now())
    assert not verify_totp(secret, _wrong_code(secret))
    assert not verify_totp(secret, "abc")


def test_backup_code_consumed_once():
    codes = generate_backup_codes(3)
    hashes = [hash_backup_code(c) for c in codes]
    remaining = consume_backup_code(hashes, codes[1].lower())
    assert remaining == [hashes[0], hashes[2]]
    assert consume_backup_code(remaining, codes[1]) is None


def test_setup_stages_secret_server_side(db_session, make_user):
    user = make_user()
    challenge = TwoFactorService(db_session).begin_setup(user)

    setup = db_session.get(models.TwoFactorSetup, challenge.session_id)
    assert setup.user_id == user.id
    assert is_sealed(setup.secret)
    assert open_secret(setup.secret) == challenge.secret
    assert "otpauth://totp/" in challenge.provisioning_uri


def test_confirm_enables_and_deletes_session(db_session, make_user):
    user = make_user()
    secret, codes = _enable(db_session, user)

    db_session.refresh(user)
    assert user.two_factor_enabled
    assert is_sealed(user.two_factor_secret)
    assert len(codes) == 10
    assert len(load_backup_codes(user.two_factor_backup_codes)) == 10
    assert db_session.query(models.TwoFactorSetup).count() == 0


def test_confirm_rejects_other_users_session(db_session, make_user):
    alice = make_user("alice")
    mallory = make_user("mallory")
    service = TwoFactorService(db_session)
    challenge = service.begin_setup(alice)

    with pytest.raises(AuthorizationError):
        service.confirm_setup(mallory, challenge.session_id, pyotp.TOTP(challenge.secret).now())


def test_confirm_expired_session_is_deleted(db_session, make_user):
    user = make_user()
    service = TwoFactorService(db_session)
    challenge = service.begin_setup(user)
    setup = db_session.get(models.TwoFactorSetup, challenge.session_id)
    setup.expires_at = models.utcnow() - timedelta(seconds=1)
    db_session.commit()

    with pytest.raises(ExpiredError):
        service.confirm_setup(user, challenge.session_id, pyotp.TOTP(challenge.secret).now())
    assert db_session.query(models.TwoFactorSetup).count() == 0


def test_confirm_wrong_code(db_session, make_user):
    user = make_user()
    service = TwoFactorService(db_session)
    challenge = service.begin_setup(user)
    with pytest.raises(ValidationError):
        service.confirm_setup(user, challenge.session_id, _wrong_code(challenge.secret))


def test_setup_refused_when_enabled(db_session, make_user):
    user = make_user()
    _enable(db_session, user)
    with pytest.raises(ValidationError):
        TwoFactorService(db_session).begin_setup(user)


def test_verify_with_totp_and_backup_code(db_session, make_user):
    user = make_user()
    secret, codes = _enable(db_session, user)
    service = TwoFactorService(db_session)

    assert service.verify(user.id, pyotp.TOTP(secret).now()).valid
    assert not service.verify(user.id, _wrong_code(secret)).valid

    check = service.verify(user.id, codes[0])
    assert check.valid and check.used_backup_code
    # Single use
    assert not service.verify(user.id, codes[0]).valid

    db_session.refresh(user)
    assert len(load_backup_codes(user.two_factor_backup_codes)) == 9


def test_disable_requires_valid_code(db_session, make_user):
    user = make_user()
    secret, _ = _enable(db_session, user)
    service = TwoFactorService(db_session)

    with pytest.raises(AuthenticationError):
        service.disable(user, _wrong_code(secret))

    service.disable(user, pyotp.TOTP(secret).now())
    db_session.refresh(user)
    assert not user.two_factor_enabled
    assert user.two_factor_secret is None
    assert service.status(user)["backup_codes_remaining"] == 0


def test_two_factor_routes(client, db_session, make_user, auth_header):
    user = make_user()
    headers = auth_header(user)

    start = client.get("/2fa/setup", headers=headers)
    assert start.status_code == 200
    body = start.json()

    confirm = client.post("/2fa/setup", headers=headers, json={
        "session_id": body["session_id"],
        "token": pyotp.TOTP(body["secret"]).now(),
    })
    assert confirm.status_code == 200
    assert len(confirm.json()["backup_codes"]) == 10

    status = client.get("/2fa/status", headers=headers).json()
    assert status["enabled"] is True

    verify = client.post("/2fa/verify", json={"user_id": user.id, "token": _wrong_code(body["secret"])})
    assert verify.status_code == 200
    assert verify.json()["valid"] is False


def test_two_factor_verify_is_throttled_per_account(client, make_user):
    user = make_user()
    statuses = []
    for i in range(11):
        response = client.post(
            "/2fa/verify",
            json={"user_id": user.id, "token": "000000"},
            headers={"X-Forwarded-For": f"10.0.0.{i}"},
        )
        statuses.append(response.status_code)
    assert statuses[:10] == [200] * 10
    assert statuses[10] == 429
