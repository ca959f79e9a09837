# Overview: Pytest coverage for the HTTP surface (status codes, payload shapes, redirects).

import pytest
from flask import g

from edition_ledger.decorators import DEFAULT_ACTOR, current_actor
from edition_ledger.models import EditionEvent, EditionEventType, LineItem
from edition_ledger.services import token_service


def _ingest(client, line_item_id, *, created_at, product_id="PROD-X", **extra):
    body = {
        "lineItemId": line_item_id,
        "orderId": "ORD-1",
        "productId": product_id,
        "fulfillmentStatus": "fulfilled",
        "createdAt": created_at,
    }
    body.update(extra)
    return client.post("/api/editions/line-items", json=body, headers={"X-Actor": "webhook"})


@pytest.fixture
def three_editions(db_session, client):
    for i, line_item_id in enumerate(["L1", "L2", "L3"], start=1):
        response = _ingest(client, line_item_id, created_at=f"2026-01-0{i}T10:00:00Z")
        assert response.status_code == 201
    return ["L1", "L2", "L3"]


class TestEditionRoutes:

    def test_ingest_returns_numbered_line_item(self, db_session, client):
        response = _ingest(client, "L1", created_at="2026-01-01T10:00:00Z", ownerEmail="ada@example.com")
        assert response.status_code == 201
        item = response.get_json()["lineItem"]
        assert item["edition_number"] == 1
        assert item["status"] == "active"
        assert item["created_at"] == "2026-01-01T10:00:00Z"

    def test_ingest_duplicate_is_conflict(self, db_session, client, three_editions):
        response = _ingest(client, "L1", created_at="2026-01-01T10:00:00Z")
        assert response.status_code == 409
        assert response.get_json()["error"] == "conflict"

    def test_ingest_rejects_bad_fields(self, db_session, client):
        response = _ingest(client, "L1", created_at="yesterday")
        assert response.status_code == 400
        response = _ingest(client, "L1", created_at="2026-01-01T10:00:00Z", editionTotal=1.5)
        assert response.status_code == 400

    def test_status_change_resequences(self, db_session, client, three_editions):
        response = client.post("/api/editions/status", json={
            "lineItemId": "L2", "orderId": "ORD-1", "status": "inactive", "reason": "cancelled",
        }, headers={"X-Actor": "admin"})

        assert response.status_code == 200
        body = response.get_json()
        assert body["success"] is True
        assert body["editionNumbersAssigned"] == 2
        assert body["editionNumber"] is None

        revoked = db_session.query(EditionEvent).filter_by(
            line_item_id="L2", event_type=EditionEventType.EDITION_REVOKED,
        ).one()
        assert revoked.created_by == "admin"
        assert db_session.get(LineItem, "L3").edition_number == 2

    def test_actor_is_read_per_request(self, db_session, client, three_editions):
        client.post("/api/editions/status", json={
            "lineItemId": "L1", "orderId": "ORD-1", "status": "inactive", "reason": "refunded",
        }, headers={"X-Actor": "admin"})
        client.post("/api/editions/status", json={
            "lineItemId": "L2", "orderId": "ORD-1", "status": "inactive", "reason": "refunded",
        })

        revoked_by = {
            ev.line_item_id: ev.created_by
            for ev in db_session.query(EditionEvent).filter_by(event_type=EditionEventType.EDITION_REVOKED)
        }
        assert revoked_by == {"L1": "admin", "L2": DEFAULT_ACTOR}

    def test_current_actor_outside_a_request(self, app):
        g.actor = "leftover"
        try:
            assert current_actor() == DEFAULT_ACTOR
        finally:
            g.pop("actor", None)

    @pytest.mark.parametrize("body, status, error", [
        ({"lineItemId": "L1", "orderId": "ORD-1", "status": "paused"}, 400, "validation_error"),
        ({"lineItemId": "L1", "orderId": "ORD-1"}, 400, "validation_error"),
        ({"lineItemId": "L9", "orderId": "ORD-1", "status": "inactive"}, 404, "not_found"),
    ])
    def test_status_change_errors(self, db_session, client, three_editions, body, status, error):
        response = client.post("/api/editions/status", json=body)
        assert response.status_code == status
        assert response.get_json()["error"] == error

    def test_non_json_body_rejected(self, db_session, client):
        response = client.post("/api/editions/status", data="status=inactive")
        assert response.status_code == 400

    def test_capacity_exceeded(self, db_session, client):
        assert _ingest(client, "L1", created_at="2026-01-01T10:00:00Z", editionTotal=1).status_code == 201
        response = _ingest(client, "L2", created_at="2026-01-02T10:00:00Z", editionTotal=1)
        assert response.status_code == 409
        assert response.get_json()["error"] == "capacity_exceeded"

    def test_assign_trigger(self, db_session, client, three_editions):
        response = client.post("/api/editions/assign", json={"productId": "PROD-X"})
        assert response.status_code == 200
        assert response.get_json() == {"success": True, "productId": "PROD-X", "editionNumbersAssigned": 3}

    def test_batch(self, db_session, client, three_editions):
        response = client.post("/api/editions/status/batch", json={"changes": [
            {"lineItemId": "L1", "orderId": "ORD-1", "status": "inactive", "reason": "refunded"},
            {"lineItemId": "GHOST", "orderId": "ORD-1", "status": "inactive"},
        ]})
        assert response.status_code == 200
        body = response.get_json()
        assert body["success"] is False
        assert {"productId": "PROD-X", "success": True, "lineItemIds": ["L1"], "editionNumbersAssigned": 2} in body["results"]

    def test_batch_requires_changes(self, db_session, client):
        response = client.post("/api/editions/status/batch", json={"changes": []})
        assert response.status_code == 400

    def test_product_and_audit_views(self, db_session, client, three_editions):
        body = client.get("/api/editions/products/PROD-X?includeHistory=true").get_json()
        assert body["totalEditions"] == 3
        assert [e["edition_number"] for e in body["editions"]] == [1, 2, 3]
        assert body["editions"][0]["history"][0]["event_type"] == "status_changed"

        audit = client.get("/api/editions/products/PROD-X/audit").get_json()
        assert audit["isContiguous"] is True

    def test_collector_view(self, db_session, client):
        _ingest(client, "L1", created_at="2026-01-01T10:00:00Z", ownerEmail="Ada@Example.com")
        body = client.get("/api/editions/collectors/ada@example.com").get_json()
        assert [e["line_item_id"] for e in body["editions"]] == ["L1"]

    def test_claim_token_issue(self, db_session, client, three_editions):
        response = client.post("/api/editions/line-items/L1/claim-token", json={"ttlSeconds": 300})
        assert response.status_code == 201
        body = response.get_json()
        assert body["claimUrl"].endswith(f"/auth/nfc/{body['token']}")

        assert client.post("/api/editions/line-items/L9/claim-token").status_code == 404
        bad_ttl = client.post("/api/editions/line-items/L1/claim-token", json={"ttlSeconds": 0})
        assert bad_ttl.status_code == 400


class TestNfcRoutes:

    def _token(self, client, line_item_id="L1"):
        return client.post(f"/api/editions/line-items/{line_item_id}/claim-token").get_json()["token"]

    def test_claim_link_redirects_to_artwork(self, db_session, client, three_editions, certificates):
        token = self._token(client)

        response = client.get(f"/auth/nfc/{token}?tagId=A1B2")

        assert response.status_code == 302
        assert response.headers["Location"].endswith("/collector/artwork/L1?authenticated=true")
        assert db_session.get(LineItem, "L1").nfc_tag_id == "A1B2"
        assert certificates.submitted == ["L1"]

        repeat = client.get(f"/auth/nfc/{token}?tagId=A1B2")
        assert repeat.status_code == 302
        auth_events = db_session.query(EditionEvent).filter_by(
            event_type=EditionEventType.NFC_AUTHENTICATED,
        ).count()
        assert auth_events == 1

    def test_claim_link_with_bad_token(self, db_session, client, three_editions):
        token = self._token(client)
        response = client.get(f"/auth/nfc/{token[:-2]}xx")
        assert response.status_code == 400
        body = response.get_json()
        assert body["error"] == "invalid_token"
        assert body["message"]

    def test_claim_link_for_missing_item(self, db_session, client):
        token = token_service.issue_token({"lineItemId": "GHOST", "orderId": "ORD-1", "editionNumber": 1}, 60)
        response = client.get(f"/auth/nfc/{token}")
        assert response.status_code == 404
        assert response.get_json()["error"] == "not_found"

    def test_json_claim(self, db_session, client, three_editions):
        token = self._token(client, "L2")

        response = client.post("/api/nfc-tags/claim", json={"token": token, "tagId": "TAG-2"})

        assert response.status_code == 200
        body = response.get_json()
        assert body["lineItemId"] == "L2"
        assert body["tagId"] == "TAG-2"
        assert body["alreadyClaimed"] is False

        conflict = client.post("/api/nfc-tags/claim", json={"token": self._token(client, "L3"), "tagId": "TAG-2"})
        assert conflict.status_code == 400
        assert conflict.get_json()["error"] == "claim_failed"

    def test_json_claim_requires_token(self, db_session, client):
        assert client.post("/api/nfc-tags/claim", json={}).status_code == 400


class TestProvenanceRoutes:

    def test_provenance_record(self, db_session, client, three_editions):
        client.post("/api/provenance/L1/transfer", json={"ownerName": "Ada", "ownerEmail": "ADA@example.com"})

        body = client.get("/api/provenance/L1").get_json()

        assert body["lineItemId"] == "L1"
        assert body["editionNumber"] == 1
        assert body["currentOwner"] == {"name": "Ada", "email": "ada@example.com", "id": None}
        assert [e["event_type"] for e in body["events"]] == [
            "status_changed", "edition_assigned", "ownership_transfer",
        ]

    def test_verify_and_replay(self, db_session, client, three_editions):
        token = client.post("/api/editions/line-items/L1/claim-token").get_json()["token"]
        client.get(f"/auth/nfc/{token}?tagId=A1B2")

        verify = client.get("/api/provenance/L1/verify").get_json()
        assert verify == {
            "lineItemId": "L1", "isValid": True, "hasAssignment": True, "hasAuthentication": True, "issues": [],
        }

        state = client.get("/api/provenance/L1/replay").get_json()["state"]
        assert state["edition_number"] == 1
        assert state["nfc_tag_id"] == "A1B2"

    def test_ownership_history(self, db_session, client, three_editions):
        client.post("/api/provenance/L1/transfer", json={"ownerId": "C-1"})
        client.post("/api/provenance/L1/transfer", json={"ownerId": "C-2"})

        body = client.get("/api/provenance/L1/ownership").get_json()
        assert body["transferCount"] == 2
        assert body["currentOwner"]["id"] == "C-2"

    def test_transfer_requires_owner(self, db_session, client, three_editions):
        assert client.post("/api/provenance/L1/transfer", json={}).status_code == 400

    def test_unknown_line_item(self, db_session, client):
        for path in ("", "/verify", "/ownership", "/replay"):
            assert client.get(f"/api/provenance/NOPE{path}").status_code == 404


class TestCertificateAndHealthRoutes:

    def test_certificate_callback(self, db_session, client, three_editions):
        response = client.post("/api/certificates/L1/generated", json={"certificateUrl": "https://certs/1"})
        assert response.status_code == 200
        assert response.get_json()["lineItem"]["certificate_url"] == "https://certs/1"

        assert client.post("/api/certificates/L1/generated", json={}).status_code == 400
        assert client.post("/api/certificates/NOPE/generated", json={"certificateUrl": "x"}).status_code == 404

    def test_health(self, db_session, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.get_json()
        assert body["checks"]["database"]["status"] == "healthy"
        assert body["checks"]["claim_tokens"]["status"] == "healthy"

    def test_health_without_secret(self, app, db_session, client, monkeypatch):
        for key in token_service.SECRET_CANDIDATES:
            monkeypatch.setitem(app.config, key, None)
        monkeypatch.delitem(app.extensions, "claim_token_secret", raising=False)

        response = client.get("/health")
        assert response.status_code == 503
        assert response.get_json()["status"] == "unhealthy"
