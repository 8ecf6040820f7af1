"""
Manual verify and status poll tests.

Verifies:
- Manual verify is admin-only and settles through the shared engine
- A second manual verify answers 400 "Order already paid"
- Status polls settle when the gateway confirms, and degrade to local
  status when the gateway is unreachable
- Buyers may only poll their own orders
"""

import httpx
import pytest

from market.models import Order
from market.services import payment_gateway
from market.services.payment_gateway import GatewayUnavailableError

from conftest import payouts_for, treasury_row


# =============================================================================
# MANUAL VERIFY
# =============================================================================


class TestManualVerify:

    def test_admin_settles_order(self, client, db_session, admin_headers, scenario_order):
        resp = client.post(f"/api/payment/manual-verify/{scenario_order.id}", headers=admin_headers)

        assert resp.status_code == 200
        body = resp.get_json()
        assert body["settlement"]["source"] == "manual_verify"
        assert body["settlement"]["payout_created"] is True
        order = db_session.get(Order, scenario_order.id)
        assert order.is_paid is True
        assert order.tracking_events[-1].title == "Payment verified manually"

    def test_second_verify_is_400(self, client, db_session, admin_headers, scenario_order):
        client.post(f"/api/payment/manual-verify/{scenario_order.id}", headers=admin_headers)

        resp = client.post(f"/api/payment/manual-verify/{scenario_order.id}", headers=admin_headers)

        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Order already paid"
        assert treasury_row().total_orders_processed == 1
        assert len(payouts_for(scenario_order.id)) == 1

    def test_unknown_order_is_404(self, client, db_session, admin_headers):
        resp = client.post("/api/payment/manual-verify/424242", headers=admin_headers)

        assert resp.status_code == 404

    def test_requires_auth(self, client, db_session, scenario_order):
        resp = client.post(f"/api/payment/manual-verify/{scenario_order.id}")

        assert resp.status_code == 401

    @pytest.mark.parametrize("headers_fixture", ["buyer_headers", "seller_headers"])
    def test_non_admin_is_403(self, request, client, db_session, scenario_order, headers_fixture):
        headers = request.getfixturevalue(headers_fixture)

        resp = client.post(f"/api/payment/manual-verify/{scenario_order.id}", headers=headers)

        assert resp.status_code == 403
        assert db_session.get(Order, scenario_order.id).is_paid is False


# =============================================================================
# STATUS POLL
# =============================================================================


def _gateway_answer(transaction_status, fraud_status="accept"):
    def _fetch(payment_id, *, client=None):
        return {
            "status_code": "200",
            "order_id": payment_id,
            "transaction_status": transaction_status,
            "fraud_status": fraud_status,
            "gross_amount": "100000.00",
            "payment_type": "bank_transfer",
        }
    return _fetch


class TestStatusPoll:

    def test_settles_when_gateway_confirms(self, client, db_session, monkeypatch, buyer_headers, scenario_order):
        monkeypatch.setattr(payment_gateway, "fetch_transaction_status", _gateway_answer("settlement"))

        resp = client.get(f"/api/payment/check-status/{scenario_order.payment_id}", headers=buyer_headers)

        assert resp.status_code == 200
        body = resp.get_json()
        assert body["is_settled"] is True
        assert body["settled_order_ids"] == [scenario_order.id]
        assert body["orders"][0]["is_paid"] is True
        assert body["gateway_status"]["payment_type"] == "bank_transfer"
        assert len(payouts_for(scenario_order.id)) == 1

    def test_lookup_by_local_order_id(self, client, db_session, monkeypatch, buyer_headers, scenario_order):
        monkeypatch.setattr(payment_gateway, "fetch_transaction_status", _gateway_answer("settlement"))

        resp = client.get(f"/api/payment/check-status/{scenario_order.id}", headers=buyer_headers)

        assert resp.status_code == 200
        assert resp.get_json()["payment_id"] == scenario_order.payment_id
        assert db_session.get(Order, scenario_order.id).is_paid is True

    def test_second_poll_does_not_settle_again(
        self, client, db_session, monkeypatch, buyer_headers, scenario_order
    ):
        monkeypatch.setattr(payment_gateway, "fetch_transaction_status", _gateway_answer("settlement"))

        client.get(f"/api/payment/check-status/{scenario_order.payment_id}", headers=buyer_headers)
        resp = client.get(f"/api/payment/check-status/{scenario_order.payment_id}", headers=buyer_headers)

        assert resp.status_code == 200
        assert resp.get_json()["settled_order_ids"] == []
        assert treasury_row().total_orders_processed == 1

    def test_pending_gateway_status_changes_nothing(
        self, client, db_session, monkeypatch, buyer_headers, scenario_order
    ):
        monkeypatch.setattr(payment_gateway, "fetch_transaction_status", _gateway_answer("pending", None))

        resp = client.get(f"/api/payment/check-status/{scenario_order.payment_id}", headers=buyer_headers)

        assert resp.status_code == 200
        body = resp.get_json()
        assert body["is_settled"] is False
        assert body["message"] == "Payment status: pending"
        assert db_session.get(Order, scenario_order.id).is_paid is False

    def test_gateway_outage_returns_local_status(
        self, client, db_session, monkeypatch, buyer_headers, scenario_order
    ):
        def unreachable(payment_id, *, client=None):
            raise GatewayUnavailableError("connect timeout")

        monkeypatch.setattr(payment_gateway, "fetch_transaction_status", unreachable)

        resp = client.get(f"/api/payment/check-status/{scenario_order.payment_id}", headers=buyer_headers)

        assert resp.status_code == 200
        body = resp.get_json()
        assert body["gateway_error"] == "connect timeout"
        assert body["message"] == "Could not verify with payment gateway - status from local database"
        assert body["orders"][0]["is_paid"] is False

    def test_unusable_gateway_body_returns_local_status(
        self, client, db_session, monkeypatch, buyer_headers, scenario_order
    ):
        def list_body_client():
            return httpx.Client(
                base_url="https://gateway.test",
                transport=httpx.MockTransport(lambda request: httpx.Response(200, json=[1])),
            )

        monkeypatch.setattr(payment_gateway, "_build_client", list_body_client)

        resp = client.get(f"/api/payment/check-status/{scenario_order.payment_id}", headers=buyer_headers)

        assert resp.status_code == 200
        body = resp.get_json()
        assert body["gateway_error"] == "Gateway returned an unexpected response body"
        assert body["is_settled"] is False
        assert db_session.get(Order, scenario_order.id).is_paid is False
        assert payouts_for(scenario_order.id) == []

    def test_other_buyer_is_403(
        self, client, db_session, monkeypatch, other_buyer_headers, scenario_order
    ):
        monkeypatch.setattr(payment_gateway, "fetch_transaction_status", _gateway_answer("settlement"))

        resp = client.get(f"/api/payment/check-status/{scenario_order.payment_id}", headers=other_buyer_headers)

        assert resp.status_code == 403
        assert db_session.get(Order, scenario_order.id).is_paid is False

    def test_admin_may_poll_any_order(self, client, db_session, monkeypatch, admin_headers, scenario_order):
        monkeypatch.setattr(payment_gateway, "fetch_transaction_status", _gateway_answer("settlement"))

        resp = client.get(f"/api/payment/check-status/{scenario_order.payment_id}", headers=admin_headers)

        assert resp.status_code == 200

    def test_unknown_reference_is_404(self, client, db_session, buyer_headers):
        resp = client.get("/api/payment/check-status/ORDER-MISSING", headers=buyer_headers)

        assert resp.status_code == 404

    def test_order_without_payment_id_is_400(self, client, db_session, buyer_headers, make_order, store, product):
        order = make_order(store=store, lines=[(product, 1)], payment_id=None)

        resp = client.get(f"/api/payment/check-status/{order.id}", headers=buyer_headers)

        assert resp.status_code == 400
