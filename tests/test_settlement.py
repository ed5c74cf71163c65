# =============================================================================
# BoxOffice - Checkout & Settlement Tests
# =============================================================================

import asyncio

import pytest

from boxoffice import service
from boxoffice.errors import (
    CapacityExceeded, ConcurrencyConflict, InvalidSignature, OrderNotFound,
    PriceMismatch, ValidationError,
)
from boxoffice.gateway import hmac_hex

from conftest import BUYER, ORGANIZER, event_data


def line(tt, qty):
    return {"ticket_type_id": tt["id"], "quantity": qty}


# =============================================================================
# Settlement
# =============================================================================

class TestSettleOrder:

    def test_settles_and_counts_sales(self, run):
        async def scenario(env):
            ev = await env.new_event([
                {"name": "GA", "price": 1000, "quantity": 10},
                {"name": "VIP", "price": 5000, "quantity": 2},
            ])
            ga, vip = ev["ticket_types"]
            order = await env.box.settle_order(
                "pay_1", ev["id"], BUYER, [line(ga, 2), line(vip, 1)],
                {"name": "Asha", "email": "asha@example.com"},
                client_total=7000,
            )
            return order, await env.events.get_inventory(ev["id"])
        order, inv = run(scenario)

        assert order["status"] == "completed"
        assert order["payment_id"] == "pay_1"
        assert order["total_amount"] == 7000
        assert order["attendee_info"] == {"name": "Asha",
                                          "email": "asha@example.com"}
        assert [it["quantity"] for it in order["items"]] == [2, 1]
        assert [t["sold"] for t in inv["ticket_types"]] == [2, 1]

    def test_same_payment_settles_once(self, run):
        async def scenario(env):
            ev = await env.new_event([{"name": "GA", "price": 1000,
                                       "quantity": 10}])
            (ga,) = ev["ticket_types"]
            first = await env.box.settle_order("pay_1", ev["id"], BUYER,
                                               [line(ga, 2)])
            second = await env.box.settle_order("pay_1", ev["id"], BUYER,
                                                [line(ga, 2)])
            return first, second, await env.events.get_inventory(ev["id"])
        first, second, inv = run(scenario)

        assert first == second
        assert inv["ticket_types"][0]["sold"] == 2

    def test_concurrent_duplicates_settle_once(self, run):
        async def scenario(env):
            ev = await env.new_event([{"name": "GA", "price": 1000,
                                       "quantity": 10}])
            (ga,) = ev["ticket_types"]
            orders = await asyncio.gather(*[
                env.box.settle_order("pay_dup", ev["id"], BUYER,
                                     [line(ga, 1)])
                for _ in range(5)
            ])
            return orders, await env.events.get_inventory(ev["id"])
        orders, inv = run(scenario)

        assert len({o["id"] for o in orders}) == 1
        assert inv["ticket_types"][0]["sold"] == 1

    def test_no_overselling_under_concurrency(self, run):
        """12 buyers race for 5 seats: exactly 5 orders, 7 rejections."""
        async def scenario(env):
            ev = await env.new_event([{"name": "GA", "price": 1000,
                                       "quantity": 5}])
            (ga,) = ev["ticket_types"]
            results = await asyncio.gather(*[
                env.box.settle_order(f"pay_{i}", ev["id"], BUYER,
                                     [line(ga, 1)])
                for i in range(12)
            ], return_exceptions=True)
            return results, await env.events.get_inventory(ev["id"])
        results, inv = run(scenario)

        orders = [r for r in results if isinstance(r, dict)]
        rejected = [r for r in results if isinstance(r, CapacityExceeded)]
        assert len(orders) == 5
        assert len(rejected) == 7
        assert inv["ticket_types"][0]["sold"] == 5
        assert inv["ticket_types"][0]["sold_out"] is True

    def test_failed_line_rolls_back_whole_order(self, run):
        async def scenario(env):
            ev = await env.new_event([
                {"name": "GA", "price": 1000, "quantity": 10},
                {"name": "VIP", "price": 5000, "quantity": 2},
            ])
            ga, vip = ev["ticket_types"]
            with pytest.raises(CapacityExceeded):
                await env.box.settle_order("pay_1", ev["id"], BUYER,
                                           [line(ga, 1), line(vip, 3)])
            with pytest.raises(OrderNotFound):
                await env.orders.get_order_by_payment_id("pay_1")
            return await env.events.get_inventory(ev["id"])
        inv = run(scenario)
        assert [t["sold"] for t in inv["ticket_types"]] == [0, 0]

    def test_price_mismatch_writes_nothing(self, run):
        async def scenario(env):
            ev = await env.new_event([{"name": "GA", "price": 1000,
                                       "quantity": 10}])
            (ga,) = ev["ticket_types"]
            with pytest.raises(PriceMismatch):
                await env.box.settle_order("pay_1", ev["id"], BUYER,
                                           [line(ga, 2)], client_total=1500)
            return await env.events.get_inventory(ev["id"])
        assert run(scenario)["ticket_types"][0]["sold"] == 0

    def test_legacy_event_keeps_flat_counter(self, run):
        async def scenario(env):
            ev = await env.events.create_legacy_event(
                ORGANIZER, event_data(None), price=500, max_tickets=50,
                sold_tickets=10,
            )
            (tt,) = ev["ticket_types"]
            order = await env.box.settle_order("pay_1", ev["id"], BUYER,
                                               [line(tt, 2)])
            return order, await env.events.get_inventory(ev["id"])
        order, inv = run(scenario)
        assert order["total_amount"] == 1000
        assert order["items"][0]["ticket_type_name"] == "General"
        assert inv["ticket_types"][0]["sold"] == 12

    def test_attendee_email_validated(self, run):
        async def scenario(env):
            ev = await env.new_event([{"name": "GA", "price": 1000,
                                       "quantity": 10}])
            (ga,) = ev["ticket_types"]
            await env.box.settle_order("pay_1", ev["id"], BUYER,
                                       [line(ga, 1)],
                                       {"name": "Asha", "email": "nope"})
        with pytest.raises(ValidationError) as exc:
            run(scenario)
        assert exc.value.field == "attendee_info.email"


class TestStaleWrites:

    def test_lost_conditional_write_is_retried(self, run, monkeypatch):
        calls = []
        real = service.write_ticket_types

        async def flaky(db, row, ticket_types, **kw):
            calls.append(row.version)
            if len(calls) == 1:
                return False
            return await real(db, row, ticket_types, **kw)

        monkeypatch.setattr(service, "write_ticket_types", flaky)

        async def scenario(env):
            ev = await env.new_event([{"name": "GA", "price": 1000,
                                       "quantity": 10}])
            (ga,) = ev["ticket_types"]
            await env.box.settle_order("pay_1", ev["id"], BUYER,
                                       [line(ga, 1)])
            return await env.events.get_inventory(ev["id"])
        inv = run(scenario)
        assert len(calls) == 2
        assert inv["ticket_types"][0]["sold"] == 1

    def test_gives_up_after_retries(self, run, monkeypatch):
        async def always_stale(db, row, ticket_types, **kw):
            return False

        monkeypatch.setattr(service, "write_ticket_types", always_stale)

        async def scenario(env):
            ev = await env.new_event([{"name": "GA", "price": 1000,
                                       "quantity": 10}])
            (ga,) = ev["ticket_types"]
            with pytest.raises(ConcurrencyConflict) as exc:
                await env.box.settle_order("pay_1", ev["id"], BUYER,
                                           [line(ga, 1)])
            assert exc.value.terminal is False
            assert exc.value.details["attempts"] == (
                env.settings.settle_max_retries
            )
            with pytest.raises(OrderNotFound):
                await env.orders.get_order_by_payment_id("pay_1")
        run(scenario)


# =============================================================================
# Checkout steps
# =============================================================================

class TestCheckout:

    def test_validate_cart_is_read_only(self, run):
        async def scenario(env):
            ev = await env.new_event([{"name": "GA", "price": 1000,
                                       "quantity": 10}])
            (ga,) = ev["ticket_types"]
            priced = await env.box.validate_cart(ev["id"], [line(ga, 3)],
                                                 3000)
            return priced, await env.events.get_inventory(ev["id"])
        priced, inv = run(scenario)
        assert priced.calculated_total == 3000
        assert inv["ticket_types"][0]["sold"] == 0

    def test_payment_intent_carries_cart(self, run):
        async def scenario(env):
            ev = await env.new_event([{"name": "GA", "price": 1000,
                                       "quantity": 10}])
            (ga,) = ev["ticket_types"]
            intent = await env.box.create_payment_intent(
                ev["id"], BUYER, [line(ga, 2)], 2000,
                {"name": "Asha", "email": "asha@example.com"},
            )
            return ev, ga, intent, env.gateway.orders[intent.gateway_order_id]
        ev, ga, intent, gw_order = run(scenario)

        assert intent.amount == 2000
        assert intent.currency == "INR"
        notes = gw_order["notes"]
        assert notes["event_id"] == ev["id"]
        assert notes["buyer_id"] == BUYER
        assert notes["total"] == "2000"
        assert notes["cart"] == (
            '[{"ticket_type_id":"%s","quantity":2}]' % ga["id"]
        )
        assert notes["attendee_email"] == "asha@example.com"

    def test_free_cart_not_sent_to_gateway(self, run):
        async def scenario(env):
            ev = await env.new_event([{"name": "Entry", "price": 0,
                                       "quantity": 10}])
            (tt,) = ev["ticket_types"]
            with pytest.raises(ValidationError):
                await env.box.create_payment_intent(ev["id"], BUYER,
                                                    [line(tt, 1)])
            return env.gateway.orders
        assert run(scenario) == {}

    def test_claim_free_order(self, run):
        async def scenario(env):
            ev = await env.new_event([{"name": "Entry", "price": 0,
                                       "quantity": 10}])
            (tt,) = ev["ticket_types"]
            order = await env.box.claim_free_order(ev["id"], BUYER,
                                                   [line(tt, 2)])
            return order, await env.events.get_inventory(ev["id"])
        order, inv = run(scenario)
        assert order["total_amount"] == 0
        assert order["payment_id"].startswith("free_")
        assert inv["ticket_types"][0]["sold"] == 2

    def test_paid_cart_cannot_be_claimed_free(self, run):
        async def scenario(env):
            ev = await env.new_event([{"name": "GA", "price": 1000,
                                       "quantity": 10}])
            (ga,) = ev["ticket_types"]
            await env.box.claim_free_order(ev["id"], BUYER, [line(ga, 1)])
        with pytest.raises(ValidationError):
            run(scenario)


# =============================================================================
# Checkout confirmation
# =============================================================================

def handshake_signature(env, gateway_order_id, payment_id):
    return hmac_hex(env.gateway.checkout_secret(),
                    f"{gateway_order_id}|{payment_id}".encode())


class TestConfirmPayment:

    def test_settles_what_was_paid(self, run):
        async def scenario(env):
            ev = await env.new_event([{"name": "GA", "price": 1000,
                                       "quantity": 10}])
            (ga,) = ev["ticket_types"]
            intent = await env.box.create_payment_intent(
                ev["id"], BUYER, [line(ga, 2)], 2000,
                {"name": "Asha", "email": "asha@example.com"},
            )
            oid = intent.gateway_order_id
            confirmed = await env.box.confirm_payment(
                oid, "pay_1", handshake_signature(env, oid, "pay_1"), BUYER)
            order = await env.box.settle_confirmed(confirmed)
            return confirmed, order
        confirmed, order = run(scenario)

        assert confirmed.amount == 2000
        assert [ln.quantity for ln in confirmed.lines] == [2]
        assert order["total_amount"] == 2000
        assert order["attendee_info"]["email"] == "asha@example.com"

    def test_differing_cart_writes_nothing(self, run):
        async def scenario(env):
            ev = await env.new_event([{"name": "GA", "price": 1000,
                                       "quantity": 10}])
            (ga,) = ev["ticket_types"]
            intent = await env.box.create_payment_intent(
                ev["id"], BUYER, [line(ga, 1)], 1000)
            oid = intent.gateway_order_id
            with pytest.raises(ValidationError) as exc:
                await env.box.confirm_payment(
                    oid, "pay_1", handshake_signature(env, oid, "pay_1"),
                    BUYER, event_id=ev["id"], cart_lines=[line(ga, 3)])
            with pytest.raises(OrderNotFound):
                await env.orders.get_order_by_payment_id("pay_1")
            return exc.value, await env.events.get_inventory(ev["id"])
        err, inv = run(scenario)
        assert err.field == "cart"
        assert inv["ticket_types"][0]["sold"] == 0

    def test_bad_signature_rejected(self, run):
        async def scenario(env):
            with pytest.raises(InvalidSignature):
                await env.box.confirm_payment("order_x", "pay_1", "nope",
                                              BUYER)
        run(scenario)
