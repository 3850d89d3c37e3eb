import unittest
from unittest.mock import patch

from core.errors import (
    AmountMismatch,
    GatewayRejected,
    GatewayUnreachable,
    InvalidInput,
    NotConfigured,
    NotFound,
    StorageUnavailable,
)
from core.ledger_store import (
    ORDER_STATUS_CANCELED,
    ORDER_STATUS_CONFIRMED,
    ORDER_STATUS_FAILED,
    ORDER_STATUS_PENDING,
    SNAPSHOT_CONFIRMED,
    GatewaySnapshot,
    order_to_dict,
)
from core.log import get_trace_id, set_trace_id
from core.reconciliation import OrderReconciler
from tests.fakes import FakeGateway, make_ledger


class BillingFlowTestCase(unittest.TestCase):
    def setUp(self):
        self.ledger = make_ledger()
        self.ledger.ensure_user("u1")
        self.ledger.ensure_user("u2")
        self.ledger.create_order("u1", amount=9900, credits=70, order_id="ord_1")
        self.gateway = FakeGateway()
        self.reconciler = OrderReconciler(self.ledger, self.gateway, secret_key="test_sk", webhook_secret="whsec")

    def test_prepare_uses_package_price(self):
        data = self.reconciler.prepare("u1", "pro")
        self.assertEqual(data["amount"], 9900)
        self.assertEqual(data["credits"], 70)
        order = self.ledger.get_order(data["orderId"])
        self.assertEqual(order.status, ORDER_STATUS_PENDING)
        self.assertEqual(order.package_id, "pro")
        with self.assertRaises(InvalidInput):
            self.reconciler.prepare("u1", "platinum")

    def test_confirm_credits_once(self):
        result = self.reconciler.confirm("u1", "pk_1", "ord_1", 9900)
        self.assertTrue(result.success)
        self.assertFalse(result.already_processed)
        self.assertEqual(result.to_response(), {"success": True, "credits": 70, "orderId": "ord_1"})
        self.assertEqual(self.ledger.get_balance("u1"), 70)
        self.assertEqual(self.gateway.confirm_calls, [("test_sk", "pk_1", "ord_1", 9900)])

        replay = self.reconciler.confirm("u1", "pk_1", "ord_1", 9900)
        self.assertTrue(replay.success)
        self.assertTrue(replay.already_processed)
        self.assertEqual(replay.credits, 70)
        self.assertEqual(len(self.gateway.confirm_calls), 1)
        self.assertEqual(self.ledger.get_balance("u1"), 70)
        self.assertEqual(len(self.ledger.list_transactions("u1")), 1)

    def test_amount_tampering_writes_nothing(self):
        with self.assertRaises(AmountMismatch):
            self.reconciler.confirm("u1", "pk_1", "ord_1", 100)
        self.assertEqual(self.gateway.confirm_calls, [])
        self.assertEqual(self.ledger.get_order("ord_1").status, ORDER_STATUS_PENDING)
        self.assertEqual(self.ledger.get_balance("u1"), 0)

    def test_invalid_input(self):
        for payment_key, order_id, amount in (("", "ord_1", 9900), ("pk_1", "", 9900), ("pk_1", "ord_1", 0), ("pk_1", "ord_1", True), ("pk_1", "ord_1", "9900")):
            with self.assertRaises(InvalidInput):
                self.reconciler.confirm("u1", payment_key, order_id, amount)
        self.assertEqual(self.gateway.confirm_calls, [])

    def test_foreign_or_unknown_order(self):
        with self.assertRaises(NotFound):
            self.reconciler.confirm("u2", "pk_1", "ord_1", 9900)
        with self.assertRaises(NotFound):
            self.reconciler.confirm("u1", "pk_1", "ord_missing", 9900)
        self.assertEqual(self.ledger.get_order("ord_1").status, ORDER_STATUS_PENDING)

    def test_missing_secret(self):
        reconciler = OrderReconciler(self.ledger, self.gateway)
        with self.assertRaises(NotConfigured):
            reconciler.confirm("u1", "pk_1", "ord_1", 9900)
        self.assertEqual(self.ledger.get_order("ord_1").status, ORDER_STATUS_PENDING)

    def test_gateway_rejection_marks_failed(self):
        self.gateway.error = GatewayRejected("card declined", diagnostic="REJECT_CARD_COMPANY")
        with self.assertRaises(GatewayRejected):
            self.reconciler.confirm("u1", "pk_1", "ord_1", 9900)
        order = self.ledger.get_order("ord_1")
        self.assertEqual(order.status, ORDER_STATUS_FAILED)
        self.assertIn("REJECT_CARD_COMPANY", order.gateway_response)
        self.assertEqual(self.ledger.get_balance("u1"), 0)

        replay = self.reconciler.confirm("u1", "pk_1", "ord_1", 9900)
        self.assertFalse(replay.success)
        self.assertEqual(replay.status, ORDER_STATUS_FAILED)

    def test_gateway_timeout_marks_failed(self):
        self.gateway.error = GatewayUnreachable("timeout")
        with self.assertRaises(GatewayUnreachable):
            self.reconciler.confirm("u1", "pk_1", "ord_1", 9900)
        self.assertEqual(self.ledger.get_order("ord_1").status, ORDER_STATUS_FAILED)

    def test_gateway_error_after_concurrent_confirm_is_replay(self):
        def confirm_elsewhere():
            self.ledger.credit_and_confirm(
                "ord_1", "u1", 70, GatewaySnapshot(kind=SNAPSHOT_CONFIRMED), payment_key="pk_1"
            )

        self.gateway.before_return = confirm_elsewhere
        self.gateway.error = GatewayRejected("already processed", diagnostic="ALREADY_PROCESSED_PAYMENT")
        result = self.reconciler.confirm("u1", "pk_1", "ord_1", 9900)
        self.assertTrue(result.success)
        self.assertTrue(result.already_processed)
        self.assertEqual(self.ledger.get_order("ord_1").status, ORDER_STATUS_CONFIRMED)
        self.assertEqual(self.ledger.get_balance("u1"), 70)

    def test_webhook_wins_race_and_payment_is_compensated(self):
        self.gateway.before_return = lambda: self.ledger.transition_status("ord_1", ORDER_STATUS_CANCELED)
        result = self.reconciler.confirm("u1", "pk_1", "ord_1", 9900)
        self.assertFalse(result.success)
        self.assertEqual(result.status, ORDER_STATUS_CANCELED)
        self.assertEqual(result.credits, 0)
        self.assertEqual(len(self.gateway.cancel_calls), 1)
        self.assertEqual(self.gateway.cancel_calls[0][0], "pk_1")
        self.assertEqual(self.ledger.get_balance("u1"), 0)

    def test_ledger_outage_after_capture(self):
        with patch.object(self.ledger, "credit_and_confirm", side_effect=StorageUnavailable("ledger write failed")):
            with self.assertRaises(StorageUnavailable):
                self.reconciler.confirm("u1", "pk_1", "ord_1", 9900)
        self.assertEqual(self.ledger.get_order("ord_1").status, ORDER_STATUS_FAILED)
        self.assertEqual(len(self.gateway.cancel_calls), 1)
        self.assertEqual(self.ledger.get_balance("u1"), 0)

    def test_cancel_pending_order(self):
        self.assertEqual(self.reconciler.cancel("u1", "ord_1"), {"orderId": "ord_1", "status": ORDER_STATUS_CANCELED})
        replay = self.reconciler.confirm("u1", "pk_1", "ord_1", 9900)
        self.assertFalse(replay.success)
        self.assertEqual(self.gateway.confirm_calls, [])

    def test_large_gateway_receipt_kept_in_snapshot(self):
        url = "https://receipt.example.com/" + "x" * 9000
        self.gateway.extra = {"receipt": {"url": url}}
        self.assertTrue(self.reconciler.confirm("u1", "pk_1", "ord_1", 9900).success)

        snapshot = order_to_dict(self.ledger.get_order("ord_1"))["gateway_snapshot"]
        self.assertEqual(snapshot["kind"], SNAPSHOT_CONFIRMED)
        self.assertEqual(snapshot["payload"]["receipt"]["url"], url)
        self.assertEqual(snapshot["payload"]["totalAmount"], 9900)

    def test_confirm_keeps_request_trace_id(self):
        seen = []
        self.gateway.before_return = lambda: seen.append(get_trace_id())
        set_trace_id("req-1")
        with self.assertLogs("core.reconciliation", level="INFO") as logs:
            self.reconciler.confirm("u1", "pk_1", "ord_1", 9900)
        self.assertEqual(seen, ["req-1"])
        self.assertEqual(get_trace_id(), "req-1")
        self.assertTrue(any("event=payment.confirm.start" in x and "order_id=ord_1" in x for x in logs.output))


if __name__ == "__main__":
    unittest.main()
