"""
订单API集成测试
测试订单相关的API端点
"""

from .conftest import LUNCH_PRICE, MONDAY, SNACK_PRICE, TUESDAY, WEEK, entry, lunch, signed_callback, snack
from ..core.exceptions import GatewayError


def _checkout(client, headers, selections=None):
    return client.post(
        "/api/v1/orders",
        headers=headers,
        json={
            "week_start": WEEK.isoformat(),
            "selections": selections or [entry(MONDAY, lunch_item=lunch(), snack_item=snack())],
        },
    )


class TestOrdersAPI:
    """订单API测试"""

    def test_create_order_success(self, client, auth_headers):
        """测试成功下单"""
        response = _checkout(client, auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["data"]["total"] == LUNCH_PRICE + SNACK_PRICE
        assert data["data"]["redirect_url"] == "https://pay.test/session/req-1"

    def test_create_order_without_token(self, client):
        """测试未认证下单"""
        response = _checkout(client, {})
        assert response.status_code == 401
        assert response.json()["error_code"] == "AUTHENTICATION_REQUIRED"

    def test_create_order_with_invalid_token(self, client):
        response = _checkout(client, {"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    def test_create_order_empty_selection(self, client, auth_headers):
        """测试全部选餐无效"""
        response = _checkout(client, auth_headers, [entry(MONDAY), entry(TUESDAY)])
        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    def test_create_order_week_not_monday(self, client, auth_headers):
        response = client.post("/api/v1/orders", headers=auth_headers, json={
            "week_start": TUESDAY.isoformat(),
            "selections": [entry(TUESDAY, lunch_item=lunch())],
        })
        assert response.status_code == 400

    def test_create_order_malformed_body(self, client, auth_headers):
        response = client.post("/api/v1/orders", headers=auth_headers, json={"selections": []})
        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    def test_duplicate_selection_conflict(self, client, auth_headers, order_service, gateway):
        """测试重复支付同一餐位"""
        first = _checkout(client, auth_headers).json()["data"]
        order_service.reconciler.handle_callback(signed_callback(gateway, first["order_id"]))

        response = _checkout(client, auth_headers, [entry(MONDAY, lunch_item=lunch("Pescado", "L3"))])
        assert response.status_code == 409
        body = response.json()
        assert body["error_code"] == "DUPLICATE_SELECTION"
        assert body["details"]["conflicts"][0]["category"] == "lunch"
        assert "Ana" in body["message"]

    def test_gateway_failure(self, client, auth_headers, gateway):
        """测试支付网关失败，订单保持待支付"""
        gateway.fail_with = GatewayError("payment gateway timed out", retryable=True)

        response = _checkout(client, auth_headers)
        assert response.status_code == 502
        body = response.json()
        assert body["details"]["retryable"] is True

        order_id = body["details"]["order_id"]
        detail = client.get(f"/api/v1/orders/{order_id}", headers=auth_headers).json()["data"]
        assert detail["status"] == "pending"

        gateway.fail_with = None
        retry = client.post(f"/api/v1/orders/{order_id}/retry-payment", headers=auth_headers)
        assert retry.status_code == 200
        assert retry.json()["data"]["order_id"] == order_id

    def test_get_order_detail(self, client, auth_headers):
        """测试获取订单详情"""
        order_id = _checkout(client, auth_headers).json()["data"]["order_id"]

        response = client.get(f"/api/v1/orders/{order_id}", headers=auth_headers)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "processing_payment"
        assert data["summary"]["total_lunches"] == 1
        assert data["summary"]["by_child"]["c1"]["subtotal"] == LUNCH_PRICE + SNACK_PRICE
        assert "payment_requested_at" in data["metadata"]

    def test_get_order_of_other_user(self, client, auth_headers, staff_headers):
        order_id = _checkout(client, auth_headers).json()["data"]["order_id"]
        response = client.get(f"/api/v1/orders/{order_id}", headers=staff_headers)
        assert response.status_code == 404

    def test_list_my_orders(self, client, auth_headers, staff_headers, clock):
        """测试获取我的订单"""
        _checkout(client, auth_headers)
        clock.advance(10)
        _checkout(client, staff_headers, [entry(MONDAY, child=None, lunch_item=lunch())])

        response = client.get("/api/v1/orders", headers=auth_headers)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["total"] == 1
        assert data["orders"][0]["user_id"] == "u-guardian"
        assert "metadata" not in data["orders"][0]

        filtered = client.get("/api/v1/orders?status=paid", headers=auth_headers).json()["data"]
        assert filtered["total"] == 0

    def test_cancel_and_amend_pending_order(self, client, auth_headers, gateway):
        """测试修改和取消待支付订单"""
        gateway.fail_with = GatewayError("down", retryable=True)
        order_id = _checkout(client, auth_headers).json()["details"]["order_id"]

        amended = client.put(f"/api/v1/orders/{order_id}", headers=auth_headers, json={
            "selections": [entry(TUESDAY, child="c2", lunch_item=lunch())],
        })
        assert amended.status_code == 200
        assert amended.json()["data"]["total"] == LUNCH_PRICE

        cancelled = client.post(f"/api/v1/orders/{order_id}/cancel", headers=auth_headers,
                                json={"reason": "no longer needed"})
        assert cancelled.status_code == 200
        assert cancelled.json()["data"]["status"] == "cancelled"
        assert cancelled.json()["data"]["cancelled_at"] is not None

    def test_cancel_processing_order(self, client, auth_headers):
        order_id = _checkout(client, auth_headers).json()["data"]["order_id"]
        response = client.post(f"/api/v1/orders/{order_id}/cancel", headers=auth_headers)
        assert response.status_code == 409
        assert response.json()["error_code"] == "ORDER_STATUS_TRANSITION_INVALID"
