"""HTTP tests for the agreement and milestone routes."""

from __future__ import annotations

from decimal import Decimal

import pytest

from conftest import DEPOSIT_TX_HASH, DEVELOPER_WALLET, PAYMENT_TX_HASH


def _agreement_body(**overrides) -> dict:  # noqa: ANN003
    body = {
        "developer_wallet": DEVELOPER_WALLET,
        "title": "Escrow dashboard",
        "description": "Dashboard for milestone escrow",
        "total_value": "1000",
        "milestones": [{"title": "Build", "value": "1000"}],
    }
    body.update(overrides)
    return body


async def _create(api_client, client_headers) -> str:  # noqa: ANN001
    response = await api_client.post(
        "/api/v1/agreements", json=_agreement_body(), headers=client_headers
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]["id"]


async def _fund(api_client, client_headers, developer_headers) -> str:  # noqa: ANN001
    agreement_id = await _create(api_client, client_headers)
    response = await api_client.post(
        f"/api/v1/agreements/{agreement_id}/submit", headers=client_headers
    )
    assert response.status_code == 200, response.text
    response = await api_client.post(
        f"/api/v1/agreements/{agreement_id}/developer-accept", json={}, headers=developer_headers
    )
    assert response.status_code == 200, response.text
    response = await api_client.post(
        f"/api/v1/agreements/{agreement_id}/client-approve",
        json={"tx_hash": DEPOSIT_TX_HASH},
        headers=client_headers,
    )
    assert response.status_code == 200, response.text
    return agreement_id


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_missing_identity(self, api_client) -> None:
        response = await api_client.get("/api/v1/agreements")

        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "AUTHENTICATION_REQUIRED"
        assert body["error"]["statusCode"] == 401

    @pytest.mark.asyncio
    async def test_invalid_user_id(self, api_client) -> None:
        response = await api_client.get(
            "/api/v1/agreements", headers={"X-User-Id": "not-a-uuid"}
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_request_id_is_echoed(self, api_client, client_headers) -> None:
        response = await api_client.get(
            "/api/v1/agreements", headers={**client_headers, "X-Request-ID": "req-42"}
        )
        assert response.headers["X-Request-ID"] == "req-42"


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_returns_envelope(self, api_client, client_headers) -> None:
        response = await api_client.post(
            "/api/v1/agreements", json=_agreement_body(), headers=client_headers
        )

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "Agreement created"
        data = body["data"]
        assert data["status"] == "draft"
        assert data["agreement_code"].startswith("AGR-")
        assert Decimal(data["total_value"]) == Decimal("1000")
        assert Decimal(data["platform_fee_amount"]) == Decimal("25")
        assert data["milestones_total"] == 1

    @pytest.mark.asyncio
    async def test_invalid_body(self, api_client, client_headers) -> None:
        response = await api_client.post(
            "/api/v1/agreements",
            json=_agreement_body(total_value="-5"),
            headers=client_headers,
        )

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert "total_value" in [e["field"] for e in error["errors"]]

    @pytest.mark.asyncio
    async def test_milestone_sum_mismatch(self, api_client, client_headers) -> None:
        response = await api_client.post(
            "/api/v1/agreements",
            json=_agreement_body(milestones=[{"title": "Half", "value": "500"}]),
            headers=client_headers,
        )
        assert response.status_code == 400
        assert response.json()["error"]["errors"][0]["field"] == "milestones"

    @pytest.mark.asyncio
    async def test_list_with_pagination(self, api_client, client_headers) -> None:
        await _create(api_client, client_headers)
        await _create(api_client, client_headers)

        response = await api_client.get(
            "/api/v1/agreements", params={"limit": 1}, headers=client_headers
        )

        body = response.json()
        assert len(body["data"]) == 1
        assert body["pagination"] == {"page": 1, "limit": 1, "total": 2, "pages": 2}


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_developer_cannot_fund(
        self, api_client, client_headers, developer_headers
    ) -> None:
        agreement_id = await _create(api_client, client_headers)
        await api_client.post(f"/api/v1/agreements/{agreement_id}/submit", headers=client_headers)
        await api_client.post(
            f"/api/v1/agreements/{agreement_id}/developer-accept",
            json={},
            headers=developer_headers,
        )

        response = await api_client.post(
            f"/api/v1/agreements/{agreement_id}/client-approve",
            json={"tx_hash": DEPOSIT_TX_HASH},
            headers=developer_headers,
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "FORBIDDEN"

    @pytest.mark.asyncio
    async def test_cancel_requires_reason(self, api_client, client_headers) -> None:
        agreement_id = await _create(api_client, client_headers)

        response = await api_client.post(
            f"/api/v1/agreements/{agreement_id}/cancel", json={}, headers=client_headers
        )

        assert response.status_code == 400
        assert response.json()["error"]["errors"][0]["field"] == "reason"

    @pytest.mark.asyncio
    async def test_illegal_transition(self, api_client, client_headers) -> None:
        agreement_id = await _create(api_client, client_headers)

        response = await api_client.post(
            f"/api/v1/agreements/{agreement_id}/complete", headers=client_headers
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_STATE_TRANSITION"

    @pytest.mark.asyncio
    async def test_detail_lists_allowed_events(
        self, api_client, client_headers, developer_headers
    ) -> None:
        agreement_id = await _fund(api_client, client_headers, developer_headers)

        response = await api_client.get(
            f"/api/v1/agreements/{agreement_id}", headers=developer_headers
        )

        data = response.json()["data"]
        assert data["status"] == "active"
        assert data["escrow_status"] == "locked"
        assert set(data["allowed_events"]) == {
            "start_work", "complete", "raise_dispute", "cancel",
        }
        assert len(data["milestones"]) == 1

    @pytest.mark.asyncio
    async def test_full_flow(
        self, api_client, uploader, client_headers, developer_headers
    ) -> None:
        agreement_id = await _fund(api_client, client_headers, developer_headers)

        response = await api_client.get(
            f"/api/v1/milestones/agreement/{agreement_id}", headers=developer_headers
        )
        (milestone,) = response.json()["data"]
        milestone_id = milestone["id"]

        response = await api_client.post(
            f"/api/v1/milestones/{milestone_id}/start", headers=developer_headers
        )
        assert response.json()["data"]["status"] == "in_progress"

        response = await api_client.post(
            f"/api/v1/milestones/{milestone_id}/submit",
            data={"notes": "All done"},
            files=[("files", ("report.txt", b"release notes", "text/plain"))],
            headers=developer_headers,
        )
        assert response.status_code == 200, response.text
        submitted = response.json()["data"]
        assert submitted["status"] == "submitted"
        assert submitted["submission"]["files"][0]["filename"] == "report.txt"
        assert len(uploader.stored) == 1

        response = await api_client.post(
            f"/api/v1/milestones/{milestone_id}/approve",
            json={"rating": 5, "feedback": "Great work"},
            headers=client_headers,
        )
        assert response.status_code == 200, response.text
        assert response.json()["data"]["is_paid"] is True

        response = await api_client.get(
            f"/api/v1/agreements/{agreement_id}", headers=client_headers
        )
        data = response.json()["data"]
        assert data["status"] == "awaiting_final_approval"
        assert Decimal(data["released_amount"]) == Decimal("1000")

        response = await api_client.get(
            f"/api/v1/transactions/agreement/{agreement_id}", headers=client_headers
        )
        payment = next(
            t for t in response.json()["data"] if t["type"] == "milestone_payment"
        )
        assert payment["status"] == "pending"

        response = await api_client.post(
            f"/api/v1/transactions/{payment['id']}/blockchain",
            json={"tx_hash": PAYMENT_TX_HASH},
            headers=client_headers,
        )
        assert response.json()["data"]["status"] == "completed"

        response = await api_client.get(
            f"/api/v1/milestones/{milestone_id}", headers=client_headers
        )
        assert response.json()["data"]["status"] == "paid"

        response = await api_client.post(
            f"/api/v1/agreements/{agreement_id}/complete", headers=client_headers
        )
        assert response.status_code == 200, response.text
        assert response.json()["data"]["status"] == "completed"

        response = await api_client.get(
            f"/api/v1/agreements/{agreement_id}/events", headers=client_headers
        )
        event_types = {e["event_type"] for e in response.json()["data"]}
        assert {"ESCROW_FUNDED", "PAYMENT_RELEASED", "MILESTONE_PAID", "AGREEMENT_COMPLETED"} <= (
            event_types
        )

    @pytest.mark.asyncio
    async def test_approve_rating_checked_after_role(
        self, api_client, client_headers, developer_headers
    ) -> None:
        agreement_id = await _fund(api_client, client_headers, developer_headers)
        response = await api_client.get(
            f"/api/v1/milestones/agreement/{agreement_id}", headers=client_headers
        )
        milestone_id = response.json()["data"][0]["id"]
        await api_client.post(f"/api/v1/milestones/{milestone_id}/start", headers=developer_headers)
        await api_client.post(
            f"/api/v1/milestones/{milestone_id}/submit",
            data={"notes": "v1"},
            headers=developer_headers,
        )

        response = await api_client.post(
            f"/api/v1/milestones/{milestone_id}/approve",
            json={"rating": 9},
            headers=developer_headers,
        )
        assert response.status_code == 403

        response = await api_client.post(
            f"/api/v1/milestones/{milestone_id}/approve",
            json={"rating": 9},
            headers=client_headers,
        )
        assert response.status_code == 400
        assert response.json()["error"]["errors"][0]["field"] == "rating"


class TestModifications:
    @pytest.mark.asyncio
    async def test_request_and_approve(
        self, api_client, client_headers, developer_headers
    ) -> None:
        agreement_id = await _fund(api_client, client_headers, developer_headers)

        response = await api_client.post(
            f"/api/v1/agreements/{agreement_id}/modifications",
            json={
                "modification_type": "payment_change",
                "description": "Bonus",
                "new_value": {"total_value": "1200"},
            },
            headers=client_headers,
        )
        assert response.status_code == 201, response.text
        modification_id = response.json()["data"]["id"]

        response = await api_client.put(
            f"/api/v1/agreements/{agreement_id}/modifications/{modification_id}",
            json={"status": "approved"},
            headers=client_headers,
        )
        assert response.status_code == 403

        response = await api_client.put(
            f"/api/v1/agreements/{agreement_id}/modifications/{modification_id}",
            json={"status": "approved", "note": "Thanks"},
            headers=developer_headers,
        )
        assert response.status_code == 200, response.text
        data = response.json()["data"]
        assert data["modification"]["status"] == "approved"
        assert Decimal(data["agreement"]["total_value"]) == Decimal("1200")
