from datetime import timedelta

import pytest

import models
from access import METHOD_BEARER, CallerIdentity
from cleanup import STALE_UPLOAD_AGE, expiry_sweep, verify_cron_secret
from errors import AuthenticationError
from transfers import FileSpec, TransferService


def _expired_transfer(db_session, fake_storage, user, sizes=(400, 600)):
    caller = CallerIdentity(user_id=user.id, method=METHOD_BEARER, permissions=frozenset({"read", "write"}))
    service = TransferService(db_session, fake_storage)
    created = service.create_transfer(
        caller, title="Old", files=[FileSpec(name=f"f{i}.bin", size=s) for i, s in enumerate(sizes)],
    )
    tid = created.transfer.transfer_id
    service.confirm_upload(caller, transfer_id=tid)
    for slot in created.upload_slots:
        fake_storage.objects[slot.storage_key] = b"x"

    transfer = db_session.query(models.Transfer).filter_by(transfer_id=tid).one()
    transfer.expires_at = models.utcnow() - timedelta(hours=1)
    db_session.commit()
    return tid, created.upload_slots


def test_sweep_releases_quota_once(db_session, fake_storage, make_user):
    user = make_user()
    tid, slots = _expired_transfer(db_session, fake_storage, user)

    report = expiry_sweep(db_session, fake_storage)
    again = expiry_sweep(db_session, fake_storage)

    assert report.deleted_count == 1
    assert report.size_freed == 1000
    assert report.expired == [(user.id, tid)]
    assert again.deleted_count == 0
    assert fake_storage.objects == {}

    db_session.refresh(user)
    assert user.storage_used == 0
    assert user.files_count == 0
    # Expiry does not give back the monthly transfer
    assert user.monthly_transfers == 1
    assert db_session.query(models.StoredFile).count() == 0


def test_blob_failures_do_not_block_metadata(db_session, fake_storage, make_user):
    user = make_user()
    _expired_transfer(db_session, fake_storage, user)
    fake_storage.fail_deletes = True

    report = expiry_sweep(db_session, fake_storage)
    assert report.deleted_count == 1
    assert report.errors == []
    assert db_session.query(models.Transfer).count() == 0


def test_live_transfers_are_kept(db_session, fake_storage, make_user):
    user = make_user()
    tid, _ = _expired_transfer(db_session, fake_storage, user)
    transfer = db_session.query(models.Transfer).filter_by(transfer_id=tid).one()
    transfer.expires_at = models.utcnow() + timedelta(days=1)
    db_session.commit()

    assert expiry_sweep(db_session, fake_storage).deleted_count == 0
    assert db_session.query(models.Transfer).count() == 1


def test_batch_size_reports_remaining(db_session, fake_storage, make_user):
    user = make_user()
    for _ in range(3):
        _expired_transfer(db_session, fake_storage, user, sizes=(10,))

    report = expiry_sweep(db_session, fake_storage, batch_size=2)
    assert report.deleted_count == 2
    assert report.remaining == 1


def test_purges_stale_secrets_and_uploads(db_session, fake_storage, make_user):
    user = make_user()
    now = models.utcnow()
    db_session.add(models.TwoFactorSetup(user_id=user.id, secret="sealed", expires_at=now - timedelta(minutes=1)))
    db_session.add(models.EmailOtp(user_id=user.id, code_hash="0" * 64, expires_at=now - timedelta(minutes=1)))
    db_session.add(models.StoredFile(
        owner_id=user.id, storage_key="user-1/stale.bin", original_name="stale.bin", size=5,
        status=models.FILE_PENDING, created_at=now - STALE_UPLOAD_AGE - timedelta(minutes=1),
    ))
    db_session.add(models.StoredFile(
        owner_id=user.id, storage_key="user-1/fresh.bin", original_name="fresh.bin", size=5,
        status=models.FILE_PENDING,
    ))
    db_session.commit()

    report = expiry_sweep(db_session, fake_storage)
    assert report.purged_secrets == 2
    assert report.purged_uploads == 1
    assert fake_storage.deleted == ["user-1/stale.bin"]
    assert [f.storage_key for f in db_session.query(models.StoredFile).all()] == ["user-1/fresh.bin"]


def test_cron_secret():
    verify_cron_secret("Bearer test-cron-secret")
    for header in (None, "", "Bearer wrong", "test-cron-secret"):
        with pytest.raises(AuthenticationError):
            verify_cron_secret(header)


def test_cron_route(client, db_session, fake_storage, make_user):
    _expired_transfer(db_session, fake_storage, make_user())

    assert client.post("/cron/cleanup").status_code == 401
    assert client.get("/cron/cleanup", headers={"Authorization": "Bearer nope"}).status_code == 401

    response = client.post("/cron/cleanup", headers={"Authorization": "Bearer test-cron-secret"})
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["deleted_count"] == 1
    assert "expired" not in body
