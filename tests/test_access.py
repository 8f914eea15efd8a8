import pytest
from starlette.requests import Request

import models
from access import (
    ANONYMOUS, METHOD_API_KEY, METHOD_BEARER, CallerIdentity, authenticate, authorize,
    ensure_permission, get_or_create_account,
)
from errors import AuthenticationError, AuthorizationError
from csrf import allowed_origins, validate_origin


def _request(headers=None, method="POST"):
    raw = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    return Request({"type": "http", "method": method, "path": "/", "headers": raw, "query_string": b""})


def test_no_credentials_is_anonymous(db_session):
    assert authenticate(_request(), db_session) is ANONYMOUS


def test_malformed_authorization_is_rejected(db_session):
    for header in ("Basic abc", "Bearer ", "Bearer garbage"):
        with pytest.raises(AuthenticationError):
            authenticate(_request({"Authorization": header}), db_session)


def test_bearer_provisions_account(db_session, auth_header):
    user = models.User(id="new-subject", email="New@Example.com")
    caller = authenticate(_request(auth_header(user)), db_session)
    assert caller.user_id == "new-subject"
    assert caller.method == METHOD_BEARER
    assert caller.can("delete")
    assert db_session.get(models.User, "new-subject").email == "new@example.com"


def test_existing_account_is_reused(db_session):
    make = get_or_create_account(db_session, "sub-1", "a@example.com")
    again = get_or_create_account(db_session, "sub-1", "other@example.com")
    assert make.id == again.id
    assert again.email == "a@example.com"


def test_authorize_rules():
    owner = CallerIdentity(user_id="u1", method=METHOD_BEARER)
    admin = CallerIdentity(user_id="root", method=METHOD_BEARER, is_admin=True)
    assert authorize(owner, "u1")
    assert not authorize(owner, "u2")
    assert not authorize(ANONYMOUS, None)
    assert authorize(ANONYMOUS, "anon_abc", capability_id="anon_abc")
    assert not authorize(ANONYMOUS, "anon_abc", capability_id="anon_xyz")
    # A capability only proves anonymous ownership
    assert not authorize(ANONYMOUS, "u1", capability_id="u1")
    assert not authorize(admin, "u1")
    assert authorize(admin, "u1", admin_scope=True)


def test_permissions():
    key_caller = CallerIdentity(user_id="u1", method=METHOD_API_KEY, permissions=frozenset({"read"}))
    ensure_permission(key_caller, "read")
    with pytest.raises(AuthorizationError):
        ensure_permission(key_caller, "write")
    ensure_permission(ANONYMOUS, "write")


def test_origin_validation():
    assert "http://localhost:3000" in allowed_origins()
    assert validate_origin(_request({"Origin": "http://localhost:3000"}))
    assert validate_origin(_request({"Referer": "http://LOCALHOST:3000/transfers/abc"}))
    assert not validate_origin(_request({"Origin": "https://evil.example"}))
    assert not validate_origin(_request({"Origin": "http://localhost:3000.evil.example"}))
    # Non-browser clients outside production
    assert validate_origin(_request())


def test_safe_methods_skip_csrf(client, make_user, auth_header):
    headers = {**auth_header(make_user()), "Origin": "https://evil.example"}
    assert client.get("/transfers", headers=headers).status_code == 200


def test_stats_for_owner_only(client, db_session, make_user, auth_header):
    owner = make_user("owner")
    created = client.post(
        "/transfers", json={"title": "Stats", "files": [{"name": "a.pdf", "size": 10}]},
        headers=auth_header(owner),
    ).json()
    tid = created["transfer"]["transfer_id"]

    stats = client.get(f"/transfers/{tid}/stats", headers=auth_header(owner))
    assert stats.status_code == 200
    assert stats.json()["stats"]["total_downloads"] == 0
    assert client.get(f"/transfers/{tid}/stats", headers=auth_header(make_user("other"))).status_code == 403


def test_admin_reconcile(client, db_session, make_user, auth_header):
    target = make_user("target", storage_used=999, files_count=4)
    admin = make_user("root", is_admin=True)

    assert client.post("/admin/users/target/reconcile", headers=auth_header(target)).status_code == 403
    response = client.post("/admin/users/target/reconcile", headers=auth_header(admin))
    assert response.json()["usage"] == {"storage_used": 0, "files_count": 0}
    db_session.refresh(target)
    assert target.storage_used == 0
    assert client.post("/admin/users/ghost/reconcile", headers=auth_header(admin)).status_code == 404
