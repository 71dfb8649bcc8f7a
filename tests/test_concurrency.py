#!/usr/bin/env python3
"""
Concurrency Tests
Races releases and transfers from many threads against one ledger.
"""
import threading
import unittest
from decimal import Decimal

from common.error_handling import InsufficientBalanceError, StateConflictError
from escrow_service.domain import TradeStatus
from tests.support import LedgerTestCase, sell_ad


def run_concurrently(*calls):
    """Start every call at once; return a list of (result, exception) in call order"""
    barrier = threading.Barrier(len(calls))
    outcomes = [None] * len(calls)

    def worker(index, fn):
        barrier.wait()
        try:
            outcomes[index] = (fn(), None)
        except Exception as e:
            outcomes[index] = (None, e)

    threads = [threading.Thread(target=worker, args=(i, fn)) for i, fn in enumerate(calls)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return outcomes


class TestConcurrentRelease(LedgerTestCase):

    def test_double_release_pays_out_once(self):
        """Two simultaneous releases: one wins, one gets a state conflict"""
        self.wallet.deposit("S", "BTC", "1")
        trade = self.trades.open_trade(sell_ad("S"), "B", "4500")
        self.trades.submit_payment_proof(trade.id, "B", "/uploads/proof.png")

        outcomes = run_concurrently(lambda: self.trades.release(trade.id, "S"),
                                    lambda: self.trades.release(trade.id, "S"))

        successes = [r for r, e in outcomes if e is None]
        failures = [e for r, e in outcomes if e is not None]
        self.assertEqual(len(successes), 1)
        self.assertEqual(len(failures), 1)
        self.assertIsInstance(failures[0], StateConflictError)

        self.assertEqual(self.trades.get_trade(trade.id, "B").trade_status, TradeStatus.COMPLETED)
        self.assertEqual(len(self.wallet.entries_for_reference(trade.id)), 2)
        self.assertEqual(self.wallet.get_balance("S", "BTC"), Decimal("0.9"))
        self.assertEqual(self.wallet.get_balance("B", "BTC"), Decimal("0.1"))

    def test_release_races_dispute(self):
        """Whichever transition wins, the other is rejected and the ledger agrees"""
        self.wallet.deposit("S", "BTC", "1")
        trade = self.trades.open_trade(sell_ad("S"), "B", "4500")
        self.trades.submit_payment_proof(trade.id, "B", "/uploads/proof.png")

        outcomes = run_concurrently(lambda: self.trades.release(trade.id, "S"),
                                    lambda: self.trades.dispute(trade.id, "B", "no payment received"))

        self.assertEqual(sum(1 for _, e in outcomes if e is None), 1)
        final = self.trades.get_trade(trade.id, "B").trade_status
        moved = len(self.wallet.entries_for_reference(trade.id))
        self.assertEqual(moved, 2 if final == TradeStatus.COMPLETED else 0)


class TestConcurrentTransfers(LedgerTestCase):

    def test_opposing_transfers_do_not_deadlock(self):
        self.wallet.deposit("alice", "USDT", "100")
        self.wallet.deposit("bob", "USDT", "100")

        calls = []
        for _ in range(10):
            calls.append(lambda: self.wallet.transfer("alice", "bob", "USDT", "3"))
            calls.append(lambda: self.wallet.transfer("bob", "alice", "USDT", "2"))
        outcomes = run_concurrently(*calls)

        self.assertTrue(all(e is None for _, e in outcomes), [e for _, e in outcomes if e])
        self.assertEqual(self.wallet.get_balance("alice", "USDT"), Decimal("90"))
        self.assertEqual(self.wallet.get_balance("bob", "USDT"), Decimal("110"))
        self.assertLedgerConsistent("alice", "USDT")
        self.assertLedgerConsistent("bob", "USDT")

    def test_overdraft_race_never_goes_negative(self):
        """Ten withdrawals of 30 against 100: exactly three succeed"""
        self.wallet.deposit("carol", "USDT", "100")
        outcomes = run_concurrently(*[
            (lambda i=i: self.wallet.transfer("carol", f"payee-{i}", "USDT", "30")) for i in range(10)
        ])

        succeeded = sum(1 for _, e in outcomes if e is None)
        rejected = [e for _, e in outcomes if e is not None]
        self.assertEqual(succeeded, 3)
        self.assertTrue(all(isinstance(e, InsufficientBalanceError) for e in rejected))
        self.assertEqual(self.wallet.get_balance("carol", "USDT"), Decimal("10"))
        self.assertLedgerConsistent("carol", "USDT")
        print(f"✅ {succeeded} withdrawals succeeded, {len(rejected)} rejected")

    def test_first_credit_to_new_balance_from_many_threads(self):
        """Lazily created balance rows survive racing creators"""
        for i in range(5):
            self.wallet.deposit(f"payer-{i}", "BTC", "1")
        run_concurrently(*[
            (lambda i=i: self.wallet.transfer(f"payer-{i}", "newcomer", "BTC", "0.2")) for i in range(5)
        ])
        self.assertEqual(self.wallet.get_balance("newcomer", "BTC"), Decimal("1.0"))
        self.assertLedgerConsistent("newcomer", "BTC")


if __name__ == "__main__":
    unittest.main()
