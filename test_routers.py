"""
HTTP tests for the family portal and the admin token/distribution routers.
"""
import pytest
from fastapi.testclient import TestClient

from conftest import ADMIN_HEADERS
from core.services import get_distribution_service, get_token_service
from main import app
from utils.access_tokens import AccessTokenService, TokenOptions
from utils.distribution import DirectChannel, DistributionService, PrintChannel
from utils.token_errors import StoreUnavailable
from utils.token_store import SqlTokenStore

BASE_URL = "https://portal.schoolpix.test"
INVALID = {"error": "Invalid or expired link", "isValid": False, "accessLevel": "none"}


@pytest.fixture
def client(tokens, store, clock):
    channels = {"print": PrintChannel(), "direct": DirectChannel()}
    app.dependency_overrides[get_token_service] = lambda: tokens
    app.dependency_overrides[get_distribution_service] = lambda: DistributionService(
        store, tokens, clock=clock, channels=channels, base_url=BASE_URL)
    yield TestClient(app)
    app.dependency_overrides.clear()


# ============================================================================
# Family portal
# ============================================================================

def test_portal_valid_token(client, tokens, students):
    token = tokens.issue_student_token("stu-1")
    resp = client.get(f"/f/{token.token}")
    assert resp.status_code == 200
    body = resp.json()
    assert body["isValid"] is True
    assert body["accessLevel"] == "student"
    assert body["subject"]["name"] == "Ava Jones"
    assert body["expiresInDays"] == 30
    assert resp.headers["cache-control"] == "no-store"
    assert resp.headers["x-frame-options"] == "DENY"


def test_portal_invalid_tokens_look_identical(client, tokens, store, clock, students):
    expired = tokens.issue_student_token("stu-1", TokenOptions(expiry_days=1))
    revoked = tokens.issue_student_token("stu-3")
    tokens.revoke_token(revoked.id)
    clock.advance(days=2)

    responses = [
        client.get(f"/f/{expired.token}"),
        client.get(f"/f/{revoked.token}"),
        client.get("/f/NoSuchTokenValue00000"),
        client.get("/f/x"),
    ]
    assert {r.status_code for r in responses} == {404}
    assert all(r.json() == INVALID for r in responses)


def test_validate_endpoint_always_200(client, tokens, students):
    token = tokens.issue_family_token(["stu-1", "stu-2"], "pat.jones@example.com")
    ok = client.post("/api/family/validate", json={"token": token.token})
    assert ok.status_code == 200
    assert ok.json()["accessLevel"] == "family"

    bad = client.post("/api/family/validate", json={"token": "NoSuchTokenValue00000"})
    assert bad.status_code == 200
    assert bad.json() == {"isValid": False, "accessLevel": "none"}


def test_store_outage_is_503_not_invalid(client, database, legacy, clock):
    class DownStore(SqlTokenStore):
        def get_by_value(self, value):
            raise StoreUnavailable("connection refused")

    app.dependency_overrides[get_token_service] = lambda: AccessTokenService(
        DownStore(database), legacy=legacy, clock=clock)
    resp = client.post("/api/family/validate", json={"token": "ABC123DEF456GHI789JKL"})
    assert resp.status_code == 503
    assert resp.json() == {"error": "Service temporarily unavailable", "retryable": True}
    assert client.get("/f/ABC123DEF456GHI789JKL").status_code == 503


def test_portal_rate_limit(client, monkeypatch, database):
    import routers.family as family_router
    monkeypatch.setattr(family_router, "check_portal_rate_limit", lambda ip: (False, "Too many requests"))
    resp = client.get("/f/ABC123DEF456GHI789JKL")
    assert resp.status_code == 429
    assert resp.json() == {"error": "Too many requests"}


def test_family_qr_code(client, tokens, students):
    token = tokens.issue_student_token("stu-1")
    resp = client.get(f"/api/family/qr/{token.token}.png")
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "image/png"
    assert resp.content.startswith(b"\x89PNG")
    assert client.get("/api/family/qr/NoSuchTokenValue00000.png").status_code == 404


# ============================================================================
# Admin tokens
# ============================================================================

@pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer wrong"}, {"Authorization": "Basic abc"}])
def test_admin_requires_auth(client, database, headers):
    resp = client.get("/api/admin/tokens/metrics", headers=headers)
    assert resp.status_code == 401
    assert resp.json() == {"error": "Unauthorized"}


def test_admin_non_ascii_bearer_is_unauthorized(client, database):
    from core.auth import verify_admin_token
    assert verify_admin_token("café") is False

    resp = client.get("/api/admin/tokens/metrics", headers={"Authorization": "Bearer café".encode("latin-1")})
    assert resp.status_code == 401
    assert resp.json() == {"error": "Unauthorized"}


def test_admin_issue_student_token(client, students):
    resp = client.post("/api/admin/tokens/student", json={"student_id": "stu-1", "expiry_days": 10},
                       headers=ADMIN_HEADERS)
    assert resp.status_code == 200
    body = resp.json()
    value = body["token"]["token"]
    assert len(value) >= 20
    assert body["portal_url"] == f"{BASE_URL}/f/{value}"
    assert body["token"]["metadata"]["generated_by"].startswith("admin:")
    assert client.get(f"/f/{value}").json()["expiresInDays"] == 10


def test_admin_issue_errors(client, students):
    missing = client.post("/api/admin/tokens/student", json={"student_id": "nobody"}, headers=ADMIN_HEADERS)
    assert missing.status_code == 404
    bad_kind = client.post("/api/admin/tokens/bulk", json={"event_id": "evt-spring", "kind": "nonsense"},
                           headers=ADMIN_HEADERS)
    assert bad_kind.status_code == 400
    bad_body = client.post("/api/admin/tokens/student", json={"student_id": "stu-1", "expiry_days": 0},
                           headers=ADMIN_HEADERS)
    assert bad_body.status_code == 422


def test_admin_bulk_and_listing_masks_values(client, event, students):
    bulk = client.post("/api/admin/tokens/bulk", json={"event_id": event.id, "kind": "family"}, headers=ADMIN_HEADERS)
    assert bulk.status_code == 200
    assert bulk.json()["summary"]["successful"] == 2

    listed = client.get("/api/admin/tokens", params={"event_id": event.id}, headers=ADMIN_HEADERS).json()
    assert len(listed["tokens"]) == 2
    assert all(t["token"].startswith("tok_") and "***" in t["token"] for t in listed["tokens"])


def test_admin_rotate_and_revoke(client, tokens, students):
    token = tokens.issue_student_token("stu-1")
    rotated = client.post(f"/api/admin/tokens/{token.id}/rotate", headers=ADMIN_HEADERS)
    assert rotated.status_code == 200
    new_value = rotated.json()["token"]["token"]
    assert client.get(f"/f/{token.token}").status_code == 404
    assert client.get(f"/f/{new_value}").status_code == 200

    new_id = rotated.json()["token"]["id"]
    revoked = client.post(f"/api/admin/tokens/{new_id}/revoke", json={"reason": "lost card"}, headers=ADMIN_HEADERS)
    assert revoked.status_code == 200
    assert revoked.json()["token"]["deactivation_reason"] == "lost card"
    assert client.get(f"/f/{new_value}").status_code == 404

    again = client.post(f"/api/admin/tokens/{new_id}/rotate", headers=ADMIN_HEADERS)
    assert again.status_code == 409
    assert client.post("/api/admin/tokens/missing/revoke", headers=ADMIN_HEADERS).status_code == 404


def test_admin_inspect_shows_state_with_masked_value(client, tokens, clock, students):
    token = tokens.issue_student_token("stu-1", TokenOptions(expiry_days=1))
    clock.advance(days=3)
    body = client.get(f"/api/admin/tokens/inspect/{token.token}", headers=ADMIN_HEADERS).json()
    assert body["state"] == "expired"
    assert body["token"]["token"] != token.token
    assert body["token"]["token"].startswith("tok_")


def test_admin_expiring_and_sweep(client, tokens, students):
    tokens.issue_student_token("stu-1", TokenOptions(expiry_days=2))
    tokens.issue_student_token("stu-2", TokenOptions(expiry_days=40))
    expiring = client.get("/api/admin/tokens/expiring", params={"days": 7}, headers=ADMIN_HEADERS).json()
    assert expiring["total_count"] == 1

    sweep = client.post("/api/admin/tokens/rotate-expiring", json={"days": 7}, headers=ADMIN_HEADERS).json()
    assert sweep["rotated"] == 1
    again = client.post("/api/admin/tokens/rotate-expiring", json={"days": 7}, headers=ADMIN_HEADERS).json()
    assert again["rotated"] == 0

    metrics = client.get("/api/admin/tokens/metrics", headers=ADMIN_HEADERS).json()
    assert metrics["total"] == 3
    assert metrics["deactivated"] == 1


def test_admin_token_qr(client, tokens, students):
    token = tokens.issue_student_token("stu-1")
    resp = client.get(f"/api/admin/tokens/{token.id}/qr.png", headers=ADMIN_HEADERS)
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "image/png"


# ============================================================================
# Distribution
# ============================================================================

def test_distribution_send_print(client, tokens, students):
    token = tokens.issue_student_token("stu-1")
    resp = client.post("/api/admin/distribution/send",
                       json={"token_ids": [token.id, "missing"], "method": "print"}, headers=ADMIN_HEADERS)
    assert resp.status_code == 200
    body = resp.json()
    assert (body["successful"], body["failed"], body["skipped"]) == (1, 0, 1)

    history = client.get(f"/api/admin/distribution/history/{token.id}", headers=ADMIN_HEADERS).json()
    assert history["history"][0]["method"] == "print"


def test_distribution_unavailable_method(client, database):
    resp = client.post("/api/admin/distribution/send", json={"token_ids": [], "method": "email"},
                       headers=ADMIN_HEADERS)
    assert resp.status_code == 400


def test_distribution_templates(client, database):
    listed = client.get("/api/admin/distribution/templates", headers=ADMIN_HEADERS).json()
    assert {"family_access", "token_expiry_warning"} <= {t["id"] for t in listed["templates"]}

    bad = client.post("/api/admin/distribution/templates", headers=ADMIN_HEADERS, json={
        "id": "broken", "name": "Broken", "method": "sms", "content": "{{#if x}}never closed",
    })
    assert bad.status_code == 400

    saved = client.post("/api/admin/distribution/templates", headers=ADMIN_HEADERS, json={
        "id": "retakes", "name": "Retakes", "method": "sms", "content": "Retakes for {{event_name}}: {{portal_url}}",
    })
    assert saved.status_code == 200
    assert saved.json()["id"] == "retakes"

    preview = client.post("/api/admin/distribution/templates/preview", headers=ADMIN_HEADERS, json={
        "template_id": "retakes", "method": "sms",
        "variables": {"event_name": "Spring Portraits", "portal_url": f"{BASE_URL}/f/demo"},
    })
    assert preview.status_code == 200
    assert preview.json()["body"] == f"Retakes for Spring Portraits: {BASE_URL}/f/demo"


def test_template_preview_ad_hoc(client, database):
    resp = client.post("/api/admin/distribution/templates/preview", headers=ADMIN_HEADERS, json={
        "content": "{{#each students}}{{name}};{{/each}}", "method": "sms",
        "variables": {"students": [{"name": "Ava"}, {"name": "Ben"}]},
    })
    assert resp.status_code == 200
    assert resp.json()["body"] == "Ava;Ben;"

    broken = client.post("/api/admin/distribution/templates/preview", headers=ADMIN_HEADERS, json={
        "content": "{{nope}}", "method": "sms",
    })
    assert broken.status_code == 400


def test_health(client):
    assert client.get("/health").json()["ok"] is True
