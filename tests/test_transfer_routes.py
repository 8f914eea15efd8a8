import re

import models

CODE_RE = re.compile(r"\b(\d{6})\b")


def _create(client, headers, **overrides):
    body = {"title": "Q1 Report", "expiry_days": 7, "files": [{"name": "report.pdf", "size": 1000}]}
    body.update(overrides)
    return client.post("/transfers", json=body, headers=headers)


def _create_active(client, headers, **overrides):
    created = _create(client, headers, **overrides).json()
    tid = created["transfer"]["transfer_id"]
    client.post("/transfers/confirm", json={"transfer_id": tid}, headers=headers)
    return tid, created["upload_slots"]


def test_create_and_confirm(client, db_session, make_user, auth_header):
    user = make_user()
    headers = auth_header(user)

    response = _create(client, headers)
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["transfer"]["status"] == "pending"
    assert len(body["upload_slots"]) == 1
    assert "capability_id" not in body

    confirm = client.post(
        "/transfers/confirm", json={"transfer_id": body["transfer"]["transfer_id"]}, headers=headers,
    )
    assert confirm.status_code == 200
    assert confirm.json()["activated"] is True

    db_session.refresh(user)
    assert user.storage_used == 1000


def test_validation_errors_use_error_shape(client, make_user, auth_header):
    response = _create(client, auth_header(make_user()), title="")
    assert response.status_code == 400
    assert response.json() == {
        "success": False, "error": "Title must be 1-100 characters", "code": "INVALID_TITLE",
    }


def test_invalid_token_is_rejected(client):
    response = _create(client, {"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401
    assert response.json()["error"] == "Invalid or expired token"


def test_identity_headers_are_ignored(client, db_session, make_user, auth_header):
    owner = make_user("owner")
    tid, _ = _create_active(client, auth_header(owner))

    response = client.delete(f"/transfers/{tid}", headers={"X-User-Id": "owner"})
    assert response.status_code == 403
    assert db_session.query(models.Transfer).count() == 1


def test_delete_by_owner(client, db_session, make_user, auth_header):
    owner = make_user("owner")
    headers = auth_header(owner)
    tid, _ = _create_active(client, headers)

    assert client.delete(f"/transfers/{tid}", headers=auth_header(make_user("other"))).status_code == 403
    assert client.delete(f"/transfers/{tid}", headers=headers).status_code == 200
    assert client.get(f"/transfers/{tid}").status_code == 404
    db_session.refresh(owner)
    assert owner.storage_used == 0


def test_public_view_and_list(client, make_user, auth_header):
    user = make_user()
    headers = auth_header(user)
    tid, _ = _create_active(client, headers, password="hunter2")

    view = client.get(f"/transfers/{tid}").json()["transfer"]
    assert view["has_password"] is True
    assert view["title"] == "Q1 Report"

    listed = client.get("/transfers", headers=headers).json()["transfers"]
    assert [t["transfer_id"] for t in listed] == [tid]
    assert client.get("/transfers").status_code == 401


def test_verify_password_route(client, make_user, auth_header):
    tid, _ = _create_active(client, auth_header(make_user()), password="hunter2")

    ok = client.post("/transfers/verify-password", json={"transfer_id": tid, "password": "hunter2"})
    assert ok.json() == {"success": True, "valid": True}

    wrong = client.post("/transfers/verify-password", json={"transfer_id": tid, "password": "nope"})
    missing = client.post("/transfers/verify-password", json={"transfer_id": "missing", "password": "nope"})
    assert wrong.status_code == missing.status_code == 200
    assert wrong.json() == missing.json() == {"success": True, "valid": False}

    client.post("/transfers/verify-password", json={"transfer_id": tid, "password": "nope"})
    client.post("/transfers/verify-password", json={"transfer_id": tid, "password": "nope"})
    limited = client.post("/transfers/verify-password", json={"transfer_id": tid, "password": "nope"})
    assert limited.status_code == 429


def test_download_locator_and_password(client, make_user, auth_header):
    tid, slots = _create_active(client, auth_header(make_user()), password="hunter2")
    url = f"/transfers/{tid}/files/{slots[0]['file_id']}/download"

    assert client.post(url).json()["code"] == "PASSWORD_REQUIRED"
    response = client.post(url, json={"password": "hunter2"})
    assert response.status_code == 200
    assert response.json()["download_url"].startswith("https://storage.test/download/")
    assert response.json()["filename"] == "report.pdf"


def test_encrypted_upload_streams_plaintext(client, db_session, make_user, auth_header):
    headers = auth_header(make_user())
    created = _create(client, headers, files=[{"name": "notes.txt", "size": 11}]).json()
    tid = created["transfer"]["transfer_id"]
    file_id = created["upload_slots"][0]["file_id"]

    upload = client.put(
        f"/transfers/{tid}/files/{file_id}/content",
        files={"file": ("notes.txt", b"hello world", "text/plain")},
        headers=headers,
    )
    assert upload.status_code == 200
    assert upload.json()["is_encrypted"] is True
    client.post("/transfers/confirm", json={"transfer_id": tid}, headers=headers)

    download = client.post(f"/transfers/{tid}/files/{file_id}/download")
    assert download.status_code == 200
    assert download.content == b"hello world"
    assert "attachment" in download.headers["content-disposition"]

    # Analytics ran after the response
    event = db_session.query(models.DownloadEvent).one()
    assert event.transfer_id == tid
    assert event.download_type == "secure"


def test_expired_transfer_returns_410(client, db_session, make_user, auth_header):
    from datetime import timedelta

    tid, slots = _create_active(client, auth_header(make_user()))
    transfer = db_session.query(models.Transfer).filter_by(transfer_id=tid).one()
    transfer.expires_at = models.utcnow() - timedelta(seconds=5)
    db_session.commit()

    assert client.get(f"/transfers/{tid}").status_code == 410
    assert client.post(f"/transfers/{tid}/files/{slots[0]['file_id']}/download").status_code == 410


def test_bulk_delete_route(client, db_session, make_user, auth_header):
    owner = make_user("owner")
    other = make_user("other")
    mine, _ = _create_active(client, auth_header(owner))
    theirs, _ = _create_active(client, auth_header(other), title="Theirs")

    response = client.post(
        "/transfers/bulk-delete", json={"ids": [mine, theirs]}, headers=auth_header(owner),
    )
    body = response.json()
    assert body["deleted"] == [mine]
    assert body["failed"][0]["id"] == theirs
    assert body["failed"][0]["code"] == "FORBIDDEN"

    too_many = client.post(
        "/transfers/bulk-delete", json={"ids": [str(i) for i in range(51)]}, headers=auth_header(owner),
    )
    assert too_many.status_code == 400


def test_email_delivery_notifies_on_activation(client, fake_mailer, make_user, auth_header):
    headers = auth_header(make_user())
    created = _create(client, headers, delivery_method="email", recipient_email="Friend@Example.com").json()
    assert fake_mailer.sent == []

    client.post("/transfers/confirm", json={"transfer_id": created["transfer"]["transfer_id"]}, headers=headers)
    recipients = [m["to"] for m in fake_mailer.sent]
    assert "friend@example.com" in recipients
    assert "user-1@example.com" in recipients


def test_csrf_rejects_foreign_origin(client, make_user, auth_header):
    headers = {**auth_header(make_user()), "Origin": "https://evil.example"}
    response = _create(client, headers)
    assert response.status_code == 403
    assert response.json()["code"] == "CSRF_VALIDATION_FAILED"


# ─── Anonymous senders ──────────────────────────────────

def _verify_sender(client, fake_mailer, email="guest@example.com"):
    assert client.post("/anonymous/send-code", json={"email": email}).status_code == 200
    code = CODE_RE.search(fake_mailer.sent[-1]["text"]).group(1)
    verified = client.post("/anonymous/verify-code", json={"email": email, "code": code})
    assert verified.status_code == 200


def test_anonymous_transfer_with_capability(client, db_session, fake_mailer):
    _verify_sender(client, fake_mailer)
    response = _create(client, {}, sender_email="guest@example.com", expiry_days=30)
    assert response.status_code == 200
    body = response.json()
    capability = body["capability_id"]
    assert capability.startswith("anon_")
    tid = body["transfer"]["transfer_id"]

    # Silently capped at the anonymous retention
    transfer = db_session.query(models.Transfer).filter_by(transfer_id=tid).one()
    days = (models.as_utc(transfer.expires_at) - models.utcnow()).total_seconds() / 86400
    assert 4.9 < days <= 5

    assert client.post("/transfers/confirm", json={"transfer_id": tid}).status_code == 403
    confirm = client.post("/transfers/confirm", json={"transfer_id": tid, "capability_id": capability})
    assert confirm.json()["activated"] is True

    sender = db_session.get(models.AnonymousSender, "guest@example.com")
    db_session.refresh(sender)
    assert sender.monthly_transfers_used == 1
    assert sender.monthly_quota_used == 1000

    assert client.delete(f"/transfers/{tid}").status_code == 403
    deleted = client.delete(f"/transfers/{tid}", headers={"X-Capability-Id": capability})
    assert deleted.status_code == 200


def test_anonymous_sender_must_verify(client):
    response = _create(client, {}, sender_email="stranger@example.com")
    assert response.status_code == 403
    assert response.json()["code"] == "EMAIL_NOT_VERIFIED"


def test_anonymous_cannot_set_password(client, fake_mailer):
    _verify_sender(client, fake_mailer)
    response = _create(client, {}, sender_email="guest@example.com", password="hunter2")
    assert response.status_code == 403
    assert response.json()["code"] == "FEATURE_NOT_AVAILABLE"
