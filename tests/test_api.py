"""Pruebas de punta a punta de la API HTTP (TestClient + SQLite en memoria)."""

from conftest import CABINET_X, CABINET_Y, CABINET_Z, CABINETS
from test_telegram import WIDGET_PAYLOAD, sign


def _balance_id(client, cabinet_from, cabinet_to):
    rows = client.get("/api/admin/balances/all").json()
    return next(
        r["id"] for r in rows
        if {r["cabinet_from"], r["cabinet_to"]} == {cabinet_from, cabinet_to}
    )


def _set_balance(client, cabinet_from, cabinet_to, amount):
    balance_id = _balance_id(client, cabinet_from, cabinet_to)
    response = client.patch(
        f"/api/admin/balances/{balance_id}",
        json={"amount": amount, "admin_name": "root", "comment": "saldo inicial"},
    )
    assert response.status_code == 200
    return balance_id


def _order(client, amount=30, **extra):
    body = {
        "from_cabinet": CABINET_X,
        "to_cabinet": CABINET_Y,
        "type": "UAH",
        "amount_usdt": amount,
        **extra,
    }
    response = client.post("/api/orders", json=body)
    assert response.status_code == 200, response.text
    return response.json()


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.headers["X-Content-Type-Options"] == "nosniff"


class TestBalancesApi:

    def test_startup_seeds_zero_balances(self, client):
        rows = client.get("/api/admin/balances/all").json()
        assert len(rows) == 3
        assert all(r["amount"] == 0 for r in rows)

        assert client.get(f"/api/balances/{CABINET_X}").json() == {CABINET_Y: 0, CABINET_Z: 0}

    def test_admin_update_requires_comment(self, client):
        balance_id = _balance_id(client, CABINET_X, CABINET_Y)
        response = client.patch(
            f"/api/admin/balances/{balance_id}",
            json={"amount": 5, "admin_name": "root", "comment": "  "},
        )
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_admin_update_unknown_balance(self, client):
        response = client.patch(
            "/api/admin/balances/9999",
            json={"amount": 5, "admin_name": "root", "comment": "x"},
        )
        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"


class TestOrdersApi:

    def test_pay_order_and_settlement_example(self, client):
        balance_id = _set_balance(client, CABINET_X, CABINET_Y, 100)

        order = _order(client, 30)
        assert order["status"] == "pending"

        response = client.patch(f"/api/orders/{order['id']}/pay", json={"receipts": ["r1.png"]})
        assert response.json() == {"success": True}
        assert client.get(f"/api/balances/{CABINET_X}").json()[CABINET_Y] == 70
        assert client.get(f"/api/balances/{CABINET_Y}").json()[CABINET_X] == -70

        second = client.patch(f"/api/orders/{order['id']}/pay", json={})
        assert second.status_code == 400
        assert second.json()["code"] == "ALREADY_SETTLED"
        amount = {r["id"]: r["amount"] for r in client.get("/api/admin/balances/all").json()}[balance_id]
        assert amount == 70

        orders = client.get(f"/api/orders/{CABINET_Y}").json()
        assert orders[0]["status"] == "completed"
        assert orders[0]["receipts"] == ["r1.png"]

    def test_order_validation_is_400(self, client):
        response = client.post("/api/orders", json={"from_cabinet": CABINET_X, "to_cabinet": CABINET_Y,
                                                    "type": "UAH", "amount_usdt": -5})
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_sub_cent_amounts_are_400(self, client):
        cases = [
            ("/api/orders", {"from_cabinet": CABINET_X, "to_cabinet": CABINET_Y,
                             "type": "UAH", "amount_usdt": "0.004"}),
            ("/api/order-requests", {"from_cabinet": CABINET_X, "to_cabinet": CABINET_Y,
                                     "amount": "0.001", "type": "UAH"}),
            ("/api/withdrawals", {"from_cabinet": CABINET_Y, "to_cabinet": CABINET_X,
                                  "amount": "0.001", "address": "TXaddr"}),
        ]
        for path, body in cases:
            response = client.post(path, json=body)
            assert response.status_code == 400, path
            assert response.json()["code"] == "VALIDATION_ERROR"

        assert client.get(f"/api/orders/{CABINET_X}").json() == []
        assert client.get("/api/order-requests").json() == []
        assert client.get(f"/api/withdrawals/{CABINET_X}").json() == []

    def test_unknown_order_is_404(self, client):
        assert client.patch("/api/orders/555/pay").status_code == 404
        assert client.patch("/api/orders/555/cancel").status_code == 404

    def test_request_flow(self, client):
        request = client.post("/api/order-requests", json={
            "from_cabinet": CABINET_X, "to_cabinet": CABINET_Y, "amount": 50, "type": "UAH",
        }).json()
        assert request["remaining_amount"] == 50

        first = _order(client, 20, request_id=request["id"])
        _order(client, 30, request_id=request["id"])
        assert client.get("/api/order-requests").json() == []

        client.patch(f"/api/orders/{first['id']}/cancel")
        active = client.get("/api/order-requests").json()
        assert [(r["id"], r["remaining_amount"]) for r in active] == [(request["id"], 20)]

        assert client.delete(f"/api/order-requests/{request['id']}").json() == {"success": True}
        assert client.delete(f"/api/order-requests/{request['id']}").status_code == 404

    def test_hide_order(self, client):
        order = _order(client, 1)
        response = client.post(f"/api/orders/{order['id']}/hide", json={"cabinet": CABINET_X})
        assert response.json() == {"success": True}

        assert client.get(f"/api/orders/{CABINET_X}").json() == []
        assert [o["id"] for o in client.get(f"/api/orders/{CABINET_Y}").json()] == [order["id"]]

        assert client.post(f"/api/orders/{order['id']}/hide", json={}).status_code == 400


class TestWithdrawalsApi:

    def test_confirm_once_and_history(self, client):
        withdrawal = client.post("/api/withdrawals", json={
            "from_cabinet": CABINET_Y, "to_cabinet": CABINET_X, "amount": 10, "address": "TXaddr",
        }).json()
        assert withdrawal["status"] == "pending"

        ok = client.patch(f"/api/withdrawals/{withdrawal['id']}/confirm", json={"txid": "0xabc"})
        assert ok.json() == {"success": True}
        again = client.patch(f"/api/withdrawals/{withdrawal['id']}/confirm", json={"txid": "0xdef"})
        assert again.status_code == 400

        history = client.get(f"/api/history/{CABINET_X}").json()
        assert [(h["operation_type"], h["txid"]) for h in history] == [("withdrawal", "0xabc")]

        assert client.post(f"/api/withdrawals/{withdrawal['id']}/hide", json={"cabinet": CABINET_X}).status_code == 200
        assert client.get(f"/api/withdrawals/{CABINET_X}").json() == []
        assert len(client.get(f"/api/withdrawals/{CABINET_Y}").json()) == 1

        assert client.delete(f"/api/withdrawals/{withdrawal['id']}").json() == {"success": True}
        assert client.delete(f"/api/withdrawals/{withdrawal['id']}").status_code == 404


class TestHistoryApi:

    def test_admin_history_includes_pending_and_adjustments(self, client):
        _set_balance(client, CABINET_X, CABINET_Y, 100)
        _order(client, 5)

        cabinet_history = client.get(f"/api/history/{CABINET_X}").json()
        assert [h["operation_type"] for h in cabinet_history] == ["balance_adjustment"]

        admin_all = client.get("/api/admin/history", params={"cabinet": "all"}).json()
        assert [h["operation_type"] for h in admin_all] == ["order", "balance_adjustment"]
        assert admin_all[0]["status"] == "pending"

        assert client.get("/api/admin/history", params={"cabinet": CABINET_Z}).json() == []


class TestAuthApi:

    def _create_key(self, client, key="clave-z", cabinet=CABINET_Z):
        response = client.post("/api/auth/keys", json={"access_key": key, "cabinet": cabinet})
        assert response.status_code == 200, response.text
        return response.json()

    def test_login_reject_logout_cycle(self, client):
        self._create_key(client)

        first = client.post("/api/auth/login", json={"key": "clave-z"}).json()
        assert first["success"] is True
        assert first["cabinet"] == CABINET_Z
        assert first["ipChanged"] is False

        second = client.post("/api/auth/login", json={"key": "clave-z"})
        assert second.status_code == 200
        assert second.json()["success"] is False

        assert client.post("/api/auth/heartbeat", json={"sessionId": first["sessionId"]}).json() == {"valid": True}
        assert client.post("/api/auth/logout", json={"sessionId": first["sessionId"]}).json() == {"success": True}
        assert client.post("/api/auth/heartbeat", json={"sessionId": first["sessionId"]}).json() == {"valid": False}

        assert client.post("/api/auth/login", json={"key": "clave-z"}).json()["success"] is True

    def test_invalid_key_is_200_with_flag(self, client):
        response = client.post("/api/auth/login", json={"key": "nope"})
        assert response.status_code == 200
        assert response.json()["success"] is False

    def test_ip_change_notifies_channel(self, client, telegram_recorder):
        self._create_key(client)

        first = client.post("/api/auth/login", json={"key": "clave-z"},
                            headers={"X-Forwarded-For": "1.1.1.1"}).json()
        client.post("/api/admin/force-logout/" + CABINET_Z)
        assert telegram_recorder.messages == []

        second = client.post("/api/auth/login", json={"key": "clave-z"},
                             headers={"X-Forwarded-For": "2.2.2.2", "User-Agent": "pytest-agent"}).json()
        assert first["success"] and second["success"]
        assert second["ipChanged"] is True

        assert len(telegram_recorder.messages) == 1
        text = telegram_recorder.messages[0]["text"]
        assert "1.1.1.1" in text and "2.2.2.2" in text and "pytest-agent" in text

    def test_key_admin(self, client):
        key = self._create_key(client)
        assert client.post("/api/auth/keys", json={"access_key": "clave-z", "cabinet": CABINET_X}).status_code == 400

        assert client.patch(f"/api/auth/keys/{key['id']}/deactivate").json() == {"success": True}
        assert client.post("/api/auth/login", json={"key": "clave-z"}).json()["success"] is False
        assert client.patch(f"/api/auth/keys/{key['id']}/activate").json() == {"success": True}

        listed = client.get("/api/auth/keys").json()
        assert [k["access_key"] for k in listed] == ["clave-z"]
        assert client.delete(f"/api/auth/keys/{key['id']}").json() == {"success": True}
        assert client.get("/api/auth/keys").json() == []


class TestTelegramApi:

    def test_login_bind_and_list(self, client):
        response = client.post("/api/telegram/login", json=sign(WIDGET_PAYLOAD))
        assert response.status_code == 200
        assert response.json()["user"]["has_cabinet"] is False

        bound = client.post("/api/telegram/bind-cabinet",
                            json={"telegram_id": WIDGET_PAYLOAD["id"], "cabinet": CABINET_Y})
        assert bound.json() == {"success": True, "cabinet": CABINET_Y}

        users = client.get("/api/telegram/users").json()
        assert [(u["telegram_id"], u["cabinet"]) for u in users] == [(WIDGET_PAYLOAD["id"], CABINET_Y)]

    def test_bad_signature_is_401(self, client):
        payload = sign(WIDGET_PAYLOAD)
        payload["first_name"] = "Otro"
        response = client.post("/api/telegram/login", json=payload)
        assert response.status_code == 401
        assert response.json()["code"] == "AUTH_FAILED"


def test_known_cabinets_configured(settings):
    assert settings.cabinets == CABINETS
