# =============================================================================
# BoxOffice - Payment Callback Tests
# =============================================================================

import json

import pytest
from sqlalchemy.exc import OperationalError

from boxoffice.errors import ConcurrencyConflict, OrderNotFound
from boxoffice.webhook import (
    MissingCart, WellFormedCart, handle_payment_callback, parse_captured,
)

from conftest import BUYER


def signed(env, event):
    body = json.dumps(event).encode()
    return body, env.gateway.sign(body)


async def paid_intent(env, quantity=2, capacity=10):
    ev = await env.new_event([{"name": "GA", "price": 1000,
                               "quantity": capacity}])
    (ga,) = ev["ticket_types"]
    intent = await env.box.create_payment_intent(
        ev["id"], BUYER, [{"ticket_type_id": ga["id"],
                           "quantity": quantity}],
    )
    return ev, intent


# =============================================================================
# Signature gate
# =============================================================================

class TestSignature:

    def test_valid_callback_settles(self, run):
        async def scenario(env):
            ev, intent = await paid_intent(env)
            body, sig = signed(env, env.gateway.captured_event(
                intent.gateway_order_id, "pay_1"))
            result = await handle_payment_callback(env.box, body, sig)
            return result, await env.events.get_inventory(ev["id"])
        result, inv = run(scenario)

        assert result.acknowledged is True
        assert result.order["payment_id"] == "pay_1"
        assert result.order["total_amount"] == 2000
        assert result.order["gateway_order_id"].startswith("order_mock_")
        assert inv["ticket_types"][0]["sold"] == 2

    def test_tampered_body_rejected(self, run):
        async def scenario(env):
            ev, intent = await paid_intent(env)
            event = env.gateway.captured_event(intent.gateway_order_id,
                                               "pay_1")
            _, sig = signed(env, event)
            event["payload"]["payment"]["entity"]["amount"] = 1
            tampered = json.dumps(event).encode()
            result = await handle_payment_callback(env.box, tampered, sig)
            with pytest.raises(OrderNotFound):
                await env.orders.get_order_by_payment_id("pay_1")
            return result
        result = run(scenario)

        assert result.acknowledged is False
        assert result.signature_rejected is True
        assert result.error["code"] == "INVALID_SIGNATURE"

    def test_missing_signature_rejected(self, run):
        async def scenario(env):
            return await handle_payment_callback(env.box, b"{}", None)
        assert run(scenario).signature_rejected is True

    def test_error_never_leaks_expected_signature(self, run):
        async def scenario(env):
            body = b'{"event":"payment.captured"}'
            return body, await handle_payment_callback(env.box, body,
                                                      "deadbeef" * 8)
        body, result = run(scenario)
        details = result.error["details"]
        assert details == {"received_length": 64,
                           "received_prefix": "deadbeef"}


# =============================================================================
# Event routing & payload parsing
# =============================================================================

class TestRouting:

    def test_other_event_types_acknowledged_and_ignored(self, run):
        async def scenario(env):
            body, sig = signed(env, {"event": "payment.failed",
                                     "payload": {}})
            return await handle_payment_callback(env.box, body, sig)
        result = run(scenario)
        assert result.acknowledged is True
        assert result.ignored is True

    def test_signed_garbage_acknowledged(self, run):
        async def scenario(env):
            body = b"not json"
            return await handle_payment_callback(env.box, body,
                                                 env.gateway.sign(body))
        result = run(scenario)
        assert result.acknowledged is True
        assert result.error["code"] == "VALIDATION_ERROR"

    def test_missing_cart_settles_default_admission(self, run):
        async def scenario(env):
            ev, intent = await paid_intent(env)
            event = env.gateway.captured_event(intent.gateway_order_id,
                                               "pay_1")
            del event["payload"]["payment"]["entity"]["notes"]["cart"]
            body, sig = signed(env, event)
            result = await handle_payment_callback(env.box, body, sig)
            return result, await env.events.get_inventory(ev["id"])
        result, inv = run(scenario)

        assert result.acknowledged is True
        (item,) = result.order["items"]
        assert item["ticket_type_name"] == "General Admission"
        assert item["quantity"] == 1
        assert item["price"] == 2000
        assert inv["ticket_types"][0]["sold"] == 1

    def test_parse_distinguishes_cart_shapes(self):
        entity = {"id": "pay_1", "amount": 100, "notes": {
            "event_id": "e" * 32, "buyer_id": BUYER,
        }}
        event = {"payload": {"payment": {"entity": entity}}}
        assert isinstance(parse_captured(event).cart, MissingCart)

        entity["notes"]["cart"] = '[{"ticket_type_id":"t","quantity":1}]'
        assert isinstance(parse_captured(event).cart, WellFormedCart)

    @pytest.mark.parametrize("notes", [
        {"event_id": "not-an-id", "buyer_id": BUYER},
        {"event_id": "e" * 32},
        {"event_id": "e" * 32, "buyer_id": BUYER, "cart": "{oops"},
    ])
    def test_malformed_notes_acknowledged_without_order(self, run, notes):
        async def scenario(env):
            body, sig = signed(env, {
                "event": "payment.captured",
                "payload": {"payment": {"entity": {
                    "id": "pay_bad", "amount": 1000, "currency": "INR",
                    "notes": notes,
                }}},
            })
            result = await handle_payment_callback(env.box, body, sig)
            with pytest.raises(OrderNotFound):
                await env.orders.get_order_by_payment_id("pay_bad")
            return result
        result = run(scenario)
        assert result.acknowledged is True
        assert result.payment_id == "pay_bad"
        assert result.error["code"] == "VALIDATION_ERROR"


# =============================================================================
# Acknowledgement policy
# =============================================================================

class TestAcknowledgement:

    def test_sold_out_after_payment_acknowledged_with_payment_id(self, run):
        async def scenario(env):
            ev, intent = await paid_intent(env, quantity=2, capacity=2)
            (ga,) = ev["ticket_types"]
            await env.box.settle_order(
                "pay_other", ev["id"], BUYER,
                [{"ticket_type_id": ga["id"], "quantity": 1}],
            )
            body, sig = signed(env, env.gateway.captured_event(
                intent.gateway_order_id, "pay_late"))
            return await handle_payment_callback(env.box, body, sig)
        result = run(scenario)

        assert result.acknowledged is True
        assert result.payment_id == "pay_late"
        assert result.error["code"] == "CAPACITY_EXCEEDED"

    def test_redelivery_returns_same_order(self, run):
        async def scenario(env):
            ev, intent = await paid_intent(env)
            body, sig = signed(env, env.gateway.captured_event(
                intent.gateway_order_id, "pay_1"))
            first = await handle_payment_callback(env.box, body, sig)
            second = await handle_payment_callback(env.box, body, sig)
            return first, second, await env.events.get_inventory(ev["id"])
        first, second, inv = run(scenario)
        assert first.order == second.order
        assert inv["ticket_types"][0]["sold"] == 2

    def test_concurrency_conflict_not_acknowledged(self, run, monkeypatch):
        async def scenario(env):
            _, intent = await paid_intent(env)

            async def conflict(*args, **kw):
                raise ConcurrencyConflict("e" * 32, 5)
            monkeypatch.setattr(env.box, "settle_order", conflict)

            body, sig = signed(env, env.gateway.captured_event(
                intent.gateway_order_id, "pay_1"))
            return await handle_payment_callback(env.box, body, sig)
        result = run(scenario)
        assert result.acknowledged is False
        assert result.error["code"] == "CONCURRENCY_CONFLICT"

    def test_database_failure_not_acknowledged(self, run, monkeypatch):
        async def scenario(env):
            _, intent = await paid_intent(env)

            async def db_down(*args, **kw):
                raise OperationalError("UPDATE events", {}, Exception("gone"))
            monkeypatch.setattr(env.box, "settle_order", db_down)

            body, sig = signed(env, env.gateway.captured_event(
                intent.gateway_order_id, "pay_1"))
            return await handle_payment_callback(env.box, body, sig)
        result = run(scenario)
        assert result.acknowledged is False
        assert result.payment_id == "pay_1"
        assert result.error["code"] == "INFRASTRUCTURE_ERROR"
