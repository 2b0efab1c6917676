"""Tests for server/gateway.py: simulated book and the RPC client."""

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import unittest
from unittest.mock import Mock
import requests

from server.gateway import SimulatedGateway, RpcGateway, DepositBook, DepositStatus, GatewayError
from protocol import FeePayer, is_valid_address


class TestSimulatedGateway(unittest.TestCase):
    def setUp(self):
        self.book = DepositBook()
        self.gw = SimulatedGateway(self.book)

    def test_is_simulated(self):
        self.assertTrue(self.gw.simulated)

    def test_address_is_deterministic(self):
        a = self.gw.derive_settlement_address("room_1", 97)
        self.assertTrue(is_valid_address(a))
        self.assertEqual(a, self.gw.derive_settlement_address("room_1", 97))
        self.assertNotEqual(a, self.gw.derive_settlement_address("room_1", 56))
        self.assertNotEqual(a, self.gw.derive_settlement_address("room_2", 97))

    def test_create_deal_records_in_book(self):
        self.gw.create_deal("room_1", 97, 101_000_000, FeePayer.SENDER)
        self.assertEqual(self.book.deals["room_1"]["deposit_amount"], 101_000_000)
        self.assertEqual(self.book.deals["room_1"]["fee_payer"], "SENDER")

    def test_no_deposit(self):
        self.assertEqual(self.gw.check_deposit("room_1", 100, 97), DepositStatus(found=False))

    def test_injected_deposit_found(self):
        tx = self.gw.inject_deposit("room_1", 100)
        status = self.gw.check_deposit("room_1", 100, 97)
        self.assertTrue(status.found)
        self.assertEqual(status.amount, 100)
        self.assertEqual(status.tx_ref, tx)

    def test_short_deposit_not_found(self):
        self.gw.inject_deposit("room_1", 99)
        self.assertFalse(self.gw.check_deposit("room_1", 100, 97).found)

    def test_books_are_independent(self):
        other = SimulatedGateway()
        self.gw.inject_deposit("room_1", 100)
        self.assertFalse(other.check_deposit("room_1", 100, 97).found)

    def test_release_and_refund_recorded(self):
        r1 = self.gw.execute_release("room_1", "0x" + "a" * 40, 99, 97)
        r2 = self.gw.execute_refund("room_2", "0x" + "b" * 40, 101, 97)
        self.assertNotEqual(r1, r2)
        self.assertTrue(r1.startswith("0x") and len(r1) == 66)
        self.assertEqual([s["type"] for s in self.book.settlements], ["release", "refund"])
        self.assertEqual(self.book.settlements_for("room_1")[0]["amount"], 99)

    def test_fail_next_fails_once(self):
        self.gw.fail_next("execute_release", "node down")
        with self.assertRaises(GatewayError) as ctx:
            self.gw.execute_release("room_1", "0x" + "a" * 40, 1, 97)
        self.assertIn("node down", str(ctx.exception))
        self.gw.execute_release("room_1", "0x" + "a" * 40, 1, 97)

    def test_fail_next_unknown_operation(self):
        with self.assertRaises(ValueError):
            self.gw.fail_next("withdraw_everything")


def _session(result=None, status_error=None, post_error=None):
    resp = Mock()
    resp.json.return_value = result
    if status_error:
        resp.raise_for_status.side_effect = status_error
    session = Mock()
    if post_error:
        session.post.side_effect = post_error
    else:
        session.post.return_value = resp
    return session


class TestRpcGateway(unittest.TestCase):
    def test_requires_url(self):
        with self.assertRaises(ValueError):
            RpcGateway(base_url="", session=Mock())

    def test_not_simulated(self):
        self.assertFalse(RpcGateway("http://gw", session=Mock()).simulated)

    def test_derive_address(self):
        session = _session({"ok": True, "address": "0x" + "1" * 40})
        gw = RpcGateway("http://gw/", timeout=5, session=session)
        self.assertEqual(gw.derive_settlement_address("room_1", 97), "0x" + "1" * 40)
        session.post.assert_called_once_with(
            "http://gw/address", json={"room_id": "room_1", "chain_id": 97}, timeout=5,
        )

    def test_amounts_sent_as_strings(self):
        session = _session({"ok": True, "tx_ref": "0xabc"})
        gw = RpcGateway("http://gw", session=session)
        self.assertEqual(gw.execute_release("room_1", "0x" + "a" * 40, 10 ** 20, 1), "0xabc")
        payload = session.post.call_args.kwargs["json"]
        self.assertEqual(payload["amount"], str(10 ** 20))

    def test_check_deposit(self):
        session = _session({"ok": True, "found": True, "amount": "101000000", "tx_ref": "0xdep"})
        status = RpcGateway("http://gw", session=session).check_deposit("room_1", 101_000_000, 1)
        self.assertEqual(status, DepositStatus(found=True, amount=101_000_000, tx_ref="0xdep"))

    def test_check_deposit_not_found(self):
        session = _session({"ok": True, "found": False})
        self.assertFalse(RpcGateway("http://gw", session=session).check_deposit("r", 1, 1).found)

    def test_ok_false_raises(self):
        session = _session({"ok": False, "error": "insufficient balance"})
        with self.assertRaises(GatewayError) as ctx:
            RpcGateway("http://gw", session=session).execute_refund("r", "0x" + "a" * 40, 1, 1)
        self.assertIn("insufficient balance", str(ctx.exception))

    def test_http_error_raises(self):
        session = _session({}, status_error=requests.HTTPError("500 Server Error"))
        with self.assertRaises(GatewayError):
            RpcGateway("http://gw", session=session).create_deal("r", 1, 100, FeePayer.SPLIT)

    def test_connection_error_raises(self):
        session = _session(post_error=requests.ConnectionError("refused"))
        with self.assertRaises(GatewayError):
            RpcGateway("http://gw", session=session).derive_settlement_address("r", 1)


if __name__ == "__main__":
    unittest.main()
