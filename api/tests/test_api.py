import os
from datetime import timedelta

from signflow.utils import make_token

ADMIN_HEADERS = {"X-Access-Token": os.getenv("ADMIN_ACCESS_TOKEN", "admin-test-token")}


def upload_document(client, content=b"lease document v1"):
    response = client.post(
        "/api/documents",
        files={"file": ("lease.pdf", content, "application/pdf")},
        headers=ADMIN_HEADERS,
    )
    assert response.status_code == 201
    return response.json()["document_id"]


def create_request(client, signers=None, **extra):
    document_id = upload_document(client)
    payload = {
        "title": "Lease agreement",
        "document_id": document_id,
        "mode": "sequential",
        "requester_name": "Rita Requester",
        "requester_email": "rita@example.com",
        "signers": signers or [
            {"name": "Alice", "email": "alice@example.com"},
            {"name": "Bob", "email": "bob@example.com"},
        ],
    }
    payload.update(extra)
    response = client.post("/api/requests", json=payload, headers=ADMIN_HEADERS)
    assert response.status_code == 201, response.text
    return response.json()


def signer_token(request_body, index):
    signer = request_body["signers"][index]
    return make_token({"signer_id": signer["id"], "request_id": request_body["id"]})


def test_admin_routes_require_token(client):
    assert client.post("/api/requests", json={}).status_code == 401
    resp = client.get("/api/requests/whatever", headers={"X-Access-Token": "nope"})
    assert resp.status_code == 403


def test_unknown_request_is_404(client):
    resp = client.get("/api/requests/missing", headers=ADMIN_HEADERS)
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"


def test_full_sequential_flow(client, store):
    body = create_request(client)
    request_id = body["id"]
    assert body["status"] == "draft"
    assert [s["position"] for s in body["signers"]] == [1, 2]

    resp = client.post(f"/api/requests/{request_id}/activate", headers=ADMIN_HEADERS)
    assert resp.status_code == 200
    assert resp.json()["status"] == "pending"

    links = client.get(f"/api/requests/{request_id}/links", headers=ADMIN_HEADERS).json()
    assert all("/sign/" in link["link"] for link in links)

    alice, bob = signer_token(body, 0), signer_token(body, 1)
    opened = client.get(f"/api/sign/{alice}")
    assert opened.status_code == 200
    assert opened.json()["signer"]["status"] == "viewed"
    assert opened.json()["request"]["status"] == "in_progress"

    early = client.post(f"/api/sign/{bob}/submit", json={})
    assert early.status_code == 409
    assert early.json()["error"]["code"] == "not_active"

    assert client.get(f"/api/sign/{alice}/document").content == b"lease document v1"
    assert client.post(f"/api/sign/{alice}/submit", json={"artifact_ref": "sig-1"}).status_code == 200
    again = client.post(f"/api/sign/{alice}/submit", json={})
    assert again.json()["error"]["code"] == "already_terminal"

    done = client.post(f"/api/sign/{bob}/submit", json={"artifact_ref": "sig-2"})
    assert done.json()["request"]["status"] == "completed"
    assert done.json()["waiting_on"] == 0

    record = client.get(f"/api/requests/{request_id}/verification", headers=ADMIN_HEADERS).json()
    final = client.get(f"/api/requests/{request_id}/final", headers=ADMIN_HEADERS)
    assert final.status_code == 200

    check = client.post(f"/api/verify/{record['lookup_token']}",
                        files={"file": ("final.pdf", final.content, "application/pdf")})
    assert check.status_code == 200
    assert check.json()["valid"] is True
    assert check.json()["request_id"] == request_id

    tampered = client.post(f"/api/verify/{record['lookup_token']}",
                           files={"file": ("final.pdf", final.content + b"\n", "application/pdf")})
    assert tampered.json()["valid"] is False
    assert tampered.json()["found"] is True

    trail = client.get(f"/api/requests/{request_id}/events", headers=ADMIN_HEADERS).json()
    assert trail["intact"] is True
    assert [e["type"] for e in trail["events"]].count("signed") == 2


def test_unknown_lookup_token_is_a_failed_verification(client):
    resp = client.post("/api/verify/bogus", files={"file": ("x.pdf", b"data", "application/pdf")})
    assert resp.status_code == 200
    assert resp.json() == {
        "valid": False, "found": False, "request_id": None, "expected_hash": None,
        "actual_hash": resp.json()["actual_hash"], "sealed_at": None,
    }


def test_bad_signing_link_is_404(client):
    assert client.get("/api/sign/not-a-token").status_code == 404


def test_duplicate_signer_maps_to_409(client):
    body = create_request(client)
    resp = client.post(f"/api/requests/{body['id']}/signers",
                       json={"name": "Alice 2", "email": "Alice@Example.com"}, headers=ADMIN_HEADERS)
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "duplicate_signer"


def test_invalid_email_maps_to_422(client):
    body = create_request(client)
    resp = client.post(f"/api/requests/{body['id']}/signers",
                       json={"name": "X", "email": "nope"}, headers=ADMIN_HEADERS)
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "invalid_email"


def test_verification_flow_over_http(client, store):
    body = create_request(client, requires_verification=True)
    client.post(f"/api/requests/{body['id']}/activate", headers=ADMIN_HEADERS)
    alice = signer_token(body, 0)

    blocked = client.post(f"/api/sign/{alice}/submit", json={})
    assert blocked.status_code == 403
    assert blocked.json()["error"]["code"] == "verification_required"

    issued = client.post(f"/api/sign/{alice}/code")
    assert issued.status_code == 200
    assert "code" not in issued.json()

    wrong = client.post(f"/api/sign/{alice}/code/verify", json={"code": "12345x"})
    assert wrong.status_code == 401
    assert wrong.json()["error"]["details"]["attempts_remaining"] == 4


def test_cancel_and_extend(client, clock):
    body = create_request(client)
    request_id = body["id"]
    client.post(f"/api/requests/{request_id}/activate", headers=ADMIN_HEADERS)

    extended = client.post(f"/api/requests/{request_id}/extend", json={"days": 5}, headers=ADMIN_HEADERS)
    assert extended.status_code == 200
    assert extended.json()["due_at"].startswith((clock() + timedelta(days=35)).date().isoformat())

    cancelled = client.post(f"/api/requests/{request_id}/cancel", json={"reason": "superseded"},
                            headers=ADMIN_HEADERS)
    assert cancelled.json()["status"] == "cancelled"
    again = client.post(f"/api/requests/{request_id}/cancel", json={}, headers=ADMIN_HEADERS)
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "illegal_transition"

    final = client.get(f"/api/requests/{request_id}/final", headers=ADMIN_HEADERS)
    assert final.status_code == 409
