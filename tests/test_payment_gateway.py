import base64
import copy
import hashlib
import hmac
import unittest
from unittest.mock import MagicMock

import requests

from core.config import cfg
from core.errors import GatewayRejected, GatewayUnreachable
from core.payment_gateway import PaymentGatewayClient, _timeout_seconds


class _MockResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


CONFIRMED = {
    "paymentKey": "pk_1",
    "orderId": "ord_1",
    "status": "DONE",
    "totalAmount": 9900,
    "method": "카드",
    "approvedAt": "2026-01-01T00:00:00+09:00",
    "receipt": {"url": "https://receipt.example"},
}


class PaymentGatewayTestCase(unittest.TestCase):
    def setUp(self):
        self._origin_payment = copy.deepcopy(cfg.config.get("payment", {}))
        self.session = MagicMock()
        self.client = PaymentGatewayClient(api_base="https://pg.example/v1", timeout=7, session=self.session)

    def tearDown(self):
        cfg.config["payment"] = self._origin_payment

    def test_confirm_success(self):
        self.session.post.return_value = _MockResponse(payload=CONFIRMED)
        result = self.client.confirm("test_sk", "pk_1", "ord_1", 9900)

        self.assertEqual(result.status, "DONE")
        self.assertEqual(result.model_dump()["receipt"]["url"], "https://receipt.example")
        args, kwargs = self.session.post.call_args
        self.assertEqual(args[0], "https://pg.example/v1/payments/confirm")
        self.assertEqual(kwargs["json"], {"paymentKey": "pk_1", "orderId": "ord_1", "amount": 9900})
        expected = "Basic " + base64.b64encode(b"test_sk:").decode("ascii")
        self.assertEqual(kwargs["headers"]["Authorization"], expected)
        self.assertEqual(kwargs["timeout"], (5.0, 7))

    def test_client_error_is_rejection(self):
        self.session.post.return_value = _MockResponse(
            status_code=400, payload={"code": "REJECT_CARD_COMPANY", "message": "card declined"}
        )
        with self.assertRaises(GatewayRejected) as ctx:
            self.client.confirm("test_sk", "pk_1", "ord_1", 9900)
        self.assertEqual(ctx.exception.diagnostic, "REJECT_CARD_COMPANY")
        self.assertIn("card declined", ctx.exception.message)

    def test_server_error_is_unreachable(self):
        self.session.post.return_value = _MockResponse(status_code=503)
        with self.assertRaises(GatewayUnreachable) as ctx:
            self.client.confirm("test_sk", "pk_1", "ord_1", 9900)
        self.assertTrue(ctx.exception.retryable)

    def test_network_error_is_unreachable(self):
        self.session.post.side_effect = requests.exceptions.ConnectTimeout("timed out")
        with self.assertRaises(GatewayUnreachable):
            self.client.confirm("test_sk", "pk_1", "ord_1", 9900)

    def test_mismatched_confirmation_rejected(self):
        self.session.post.return_value = _MockResponse(payload=dict(CONFIRMED, totalAmount=100))
        with self.assertRaises(GatewayRejected) as ctx:
            self.client.confirm("test_sk", "pk_1", "ord_1", 9900)
        self.assertEqual(ctx.exception.diagnostic, "MISMATCHED_CONFIRMATION")

    def test_malformed_confirmation_rejected(self):
        self.session.post.return_value = _MockResponse(payload={"status": "DONE"})
        with self.assertRaises(GatewayRejected):
            self.client.confirm("test_sk", "pk_1", "ord_1", 9900)

    def test_cancel(self):
        self.session.post.return_value = _MockResponse(payload={"paymentKey": "pk_1", "status": "CANCELED"})
        self.assertEqual(self.client.cancel("test_sk", "pk_1", "order closed")["status"], "CANCELED")
        args, kwargs = self.session.post.call_args
        self.assertEqual(args[0], "https://pg.example/v1/payments/pk_1/cancel")
        self.assertEqual(kwargs["json"], {"cancelReason": "order closed"})

    def test_timeout_is_clamped(self):
        cfg.config["payment"] = {"timeout_seconds": 600}
        self.assertEqual(_timeout_seconds(), 60.0)
        cfg.config["payment"] = {"timeout_seconds": "oops"}
        self.assertEqual(_timeout_seconds(), 10.0)


class SignatureTestCase(unittest.TestCase):
    body = b'{"eventType":"PAYMENT_STATUS_CHANGED"}'

    def _sign(self, secret, body):
        return base64.b64encode(hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()).decode("ascii")

    def test_valid_signature(self):
        self.assertTrue(PaymentGatewayClient.verify_signature("whsec", self.body, self._sign("whsec", self.body)))
        self.assertTrue(PaymentGatewayClient.verify_signature("whsec", self.body.decode(), self._sign("whsec", self.body)))

    def test_invalid_signatures(self):
        good = self._sign("whsec", self.body)
        self.assertFalse(PaymentGatewayClient.verify_signature("whsec", self.body + b" ", good))
        self.assertFalse(PaymentGatewayClient.verify_signature("other", self.body, good))
        self.assertFalse(PaymentGatewayClient.verify_signature("whsec", self.body, ""))
        self.assertFalse(PaymentGatewayClient.verify_signature("", self.body, good))
        self.assertFalse(PaymentGatewayClient.verify_signature("whsec", self.body, "ä-not-base64"))


if __name__ == "__main__":
    unittest.main()
