#!/usr/bin/env python3
"""
Unit Tests for the Wallet Service and Ledger Store
"""
import unittest
from decimal import Decimal

from common.error_handling import (AuthorizationError, InsufficientBalanceError, UnknownAsset,
                                   ValidationError)
from escrow_service.domain import Asset, EntryKind
from tests.support import LedgerTestCase, settings_for


class TestBalances(LedgerTestCase):

    def test_unknown_user_has_zero_balance(self):
        self.assertEqual(self.wallet.get_balance("nobody", "BTC"), Decimal("0"))
        self.assertEqual(self.wallet.list_balances("nobody"), {Asset.BTC: Decimal("0"), Asset.USDT: Decimal("0")})

    def test_unknown_asset_is_rejected(self):
        with self.assertRaises(UnknownAsset):
            self.wallet.get_balance("alice", "ETH")

    def test_asset_symbol_is_case_insensitive(self):
        self.wallet.deposit("alice", "btc", "0.5")
        self.assertEqual(self.wallet.get_balance("alice", Asset.BTC), Decimal("0.5"))

    def test_amounts_are_quantized_to_eight_places(self):
        self.wallet.deposit("alice", "BTC", "0.123456785")
        # banker's rounding: ...785 -> ...78
        self.assertEqual(self.wallet.get_balance("alice", "BTC"), Decimal("0.12345678"))

    def test_large_balances_keep_every_digit(self):
        """19 significant digits survive storage and the ledger still sums to the balance"""
        self.wallet.deposit("whale", "USDT", "12345678901.12345678")
        self.wallet.deposit("whale", "USDT", "0.00000001")

        expected = Decimal("12345678901.12345679")
        self.assertEqual(self.wallet.get_balance("whale", "USDT"), expected)
        self.assertEqual(self.wallet.reconcile("whale", "USDT"), (expected, expected))
        history, total = self.wallet.list_entries("whale", "USDT")
        self.assertEqual(total, 2)
        self.assertEqual(Decimal(history[0].resulting_balance), expected)


class TestTransfer(LedgerTestCase):

    def setUp(self):
        super().setUp()
        self.wallet.deposit("alice", "BTC", "1.0", reference_id="seed")

    def test_transfer_moves_amount_and_writes_two_entries(self):
        """A transfer writes one WITHDRAWAL and one DEPOSIT with a shared reference"""
        result = self.wallet.transfer("alice", "bob", "BTC", "0.25", reference_id="t-1")

        self.assertEqual(result.from_balance, Decimal("0.75"))
        self.assertEqual(result.to_balance, Decimal("0.25"))
        self.assertEqual(self.wallet.get_balance("alice", "BTC"), Decimal("0.75"))
        self.assertEqual(self.wallet.get_balance("bob", "BTC"), Decimal("0.25"))

        entries = self.wallet.entries_for_reference("t-1")
        self.assertEqual([e.kind for e in entries], [EntryKind.WITHDRAWAL.value, EntryKind.DEPOSIT.value])
        self.assertEqual(sorted(Decimal(e.delta) for e in entries), [Decimal("-0.25"), Decimal("0.25")])

    def test_transfer_generates_reference_when_missing(self):
        result = self.wallet.transfer("alice", "bob", "BTC", "0.1")
        self.assertTrue(result.reference_id)
        self.assertEqual(len(self.wallet.entries_for_reference(result.reference_id)), 2)

    def test_rejected_transfer_changes_nothing(self):
        """Overdraft leaves both balances and the ledger untouched"""
        with self.assertRaises(InsufficientBalanceError) as ctx:
            self.wallet.transfer("alice", "bob", "BTC", "1.5", reference_id="t-2")

        self.assertEqual(ctx.exception.context["available"], "1.00000000")
        self.assertEqual(self.wallet.get_balance("alice", "BTC"), Decimal("1.0"))
        self.assertEqual(self.wallet.get_balance("bob", "BTC"), Decimal("0"))
        self.assertEqual(self.wallet.entries_for_reference("t-2"), [])
        self.assertLedgerConsistent("alice", "BTC")

    def test_transfer_whole_balance_leaves_zero(self):
        self.wallet.transfer("alice", "bob", "BTC", "1.0")
        self.assertEqual(self.wallet.get_balance("alice", "BTC"), Decimal("0"))

    def test_transfer_rejects_bad_input(self):
        for amount in ("0", "-1", "abc", "0.000000001"):
            with self.subTest(amount=amount):
                with self.assertRaises(ValidationError):
                    self.wallet.transfer("alice", "bob", "BTC", amount)
        with self.assertRaises(ValidationError):
            self.wallet.transfer("alice", "alice", "BTC", "0.1")
        with self.assertRaises(UnknownAsset):
            self.wallet.transfer("alice", "bob", "DOGE", "0.1")

    def test_assets_are_independent(self):
        with self.assertRaises(InsufficientBalanceError):
            self.wallet.transfer("alice", "bob", "USDT", "1")
        self.assertEqual(self.wallet.get_balance("alice", "BTC"), Decimal("1.0"))


class TestAdjustSingle(LedgerTestCase):

    def test_negative_result_is_rejected(self):
        self.wallet.deposit("carol", "USDT", "10")
        with self.assertRaises(InsufficientBalanceError):
            self.wallet.adjust_single("carol", "USDT", "-10.00000001", EntryKind.SWAP_DEBIT, "x")
        self.assertEqual(self.wallet.get_balance("carol", "USDT"), Decimal("10"))

    def test_zero_delta_is_rejected(self):
        with self.assertRaises(ValidationError):
            self.wallet.adjust_single("carol", "USDT", "0", EntryKind.DEPOSIT)

    def test_entry_records_resulting_balance(self):
        self.wallet.deposit("carol", "USDT", "10")
        entry = self.wallet.adjust_single("carol", "USDT", "-4", EntryKind.SWAP_DEBIT, "swap-1")
        self.assertEqual(Decimal(entry.delta), Decimal("-4"))
        self.assertEqual(Decimal(entry.resulting_balance), Decimal("6"))


class TestLedgerHistory(LedgerTestCase):

    def test_balance_equals_sum_of_deltas_after_mixed_operations(self):
        self.wallet.deposit("alice", "BTC", "2")
        self.wallet.deposit("bob", "USDT", "500")
        self.wallet.transfer("alice", "bob", "BTC", "0.3")
        self.wallet.transfer("bob", "alice", "BTC", "0.1")
        self.wallet.adjust_single("bob", "USDT", "-125.5", EntryKind.SWAP_DEBIT, "s")
        with self.assertRaises(InsufficientBalanceError):
            self.wallet.transfer("bob", "alice", "BTC", "5")

        for user in ("alice", "bob"):
            for asset in Asset:
                self.assertLedgerConsistent(user, asset)
        print("✅ Ledger invariant holds for every balance")

    def test_list_entries_is_paged_newest_first(self):
        for i in range(5):
            self.wallet.deposit("dave", "USDT", str(i + 1), reference_id=f"dep-{i}")

        first, total = self.wallet.list_entries("dave", "USDT", page=1, limit=2)
        second, _ = self.wallet.list_entries("dave", "USDT", page=2, limit=2)

        self.assertEqual(total, 5)
        self.assertEqual([e.reference_id for e in first], ["dep-4", "dep-3"])
        self.assertEqual([e.reference_id for e in second], ["dep-2", "dep-1"])

    def test_list_entries_validates_paging(self):
        with self.assertRaises(ValidationError):
            self.wallet.list_entries("dave", "USDT", page=0)
        with self.assertRaises(ValidationError):
            self.wallet.list_entries("dave", "USDT", limit=101)


class TestDemoSeeding(LedgerTestCase):

    def test_seeding_tops_up_to_configured_amounts(self):
        self.wallet.deposit("erin", "USDT", "400")
        balances = self.wallet.seed_demo_balances("erin")

        self.assertEqual(balances[Asset.BTC], Decimal("0.001"))
        self.assertEqual(balances[Asset.USDT], Decimal("1000"))
        self.assertLedgerConsistent("erin", "USDT")

    def test_seeding_twice_writes_no_new_entries(self):
        self.wallet.seed_demo_balances("erin")
        _, before = self.wallet.list_entries("erin", "BTC")
        self.wallet.seed_demo_balances("erin")
        _, after = self.wallet.list_entries("erin", "BTC")
        self.assertEqual(before, after)

    def test_seeding_is_forbidden_in_production(self):
        self.wallet._config = settings_for(self._tmp.name, environment="production")
        with self.assertRaises(AuthorizationError):
            self.wallet.seed_demo_balances("erin")


class TestProvisioning(LedgerTestCase):

    def test_addresses_are_generated_once(self):
        addresses, generated = self.wallet.provision_addresses("frank")
        self.assertTrue(generated)
        self.assertEqual(addresses["BTC"], "1A1zP1eP5QGefi2DMPTfTL5SLmv7DivfNa")
        self.assertTrue(addresses["USDT"].startswith("0x"))

        again, generated = self.wallet.provision_addresses("frank")
        self.assertFalse(generated)
        self.assertEqual(again, addresses)


if __name__ == "__main__":
    unittest.main()
