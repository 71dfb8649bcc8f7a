"""
Shared fixtures for the escrow test-suite: a throwaway SQLite ledger per test
and an in-process stand-in for the Redis client.
"""
import tempfile
import unittest
from decimal import Decimal

from common.settings import Settings
from escrow_service.collaborators import DemoWalletProvisioner
from escrow_service.db import make_engine
from escrow_service.domain import AdvertisementSnapshot
from escrow_service.ledger_store import LedgerStore
from escrow_service.swaps import SwapEngine
from escrow_service.trades import TradeEngine
from escrow_service.wallet import WalletService

def make_store(directory: str) -> LedgerStore:
    store = LedgerStore(make_engine(f"sqlite:///{directory}/escrow.db"))
    store.create_schema()
    return store

def settings_for(directory: str, **overrides) -> Settings:
    values = {
        "environment": "test",
        "upload_path": f"{directory}/uploads",
        "btc_usdt_rate": Decimal("45000"),
        "demo_btc_balance": Decimal("0.001"),
        "demo_usdt_balance": Decimal("1000.00"),
        "btc_network": "mainnet",
    }
    values.update(overrides)
    return Settings(**values)

def sell_ad(owner_id: str = "S", **overrides) -> AdvertisementSnapshot:
    values = dict(advertisement_id="ad-1", asset="BTC", trade_type="SELL", rate=Decimal("45000"),
                  min_limit=Decimal("100"), max_limit=Decimal("10000"), owner_id=owner_id,
                  currency="USD", payment_method="bank_transfer")
    values.update(overrides)
    return AdvertisementSnapshot(**values)

def ad_payload(ad_id: str = "ad-1", owner_id: str = "S", **overrides) -> dict:
    payload = {"id": ad_id, "user_id": owner_id, "asset": "BTC", "trade_type": "SELL", "rate": "45000",
               "min_limit": "100", "max_limit": "10000", "currency": "USD", "payment_method": "bank_transfer",
               "status": "ACTIVE"}
    payload.update(overrides)
    return payload

class FakeRedis:
    """Just enough of redis.Redis for the idempotency cache"""

    def __init__(self):
        self.data = {}

    def ping(self):
        return True

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self.data:
            return None
        self.data[key] = value
        return True

    def get(self, key):
        return self.data.get(key)

    def delete(self, key):
        return 1 if self.data.pop(key, None) is not None else 0

class LedgerTestCase(unittest.TestCase):
    """Fresh ledger, wallet and engines on a temporary SQLite file"""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.config = settings_for(self._tmp.name)
        self.store = make_store(self._tmp.name)
        self.wallet = WalletService(self.store, provisioner=DemoWalletProvisioner("mainnet"), config=self.config)
        self.trades = TradeEngine(self.store, self.wallet)
        self.swaps = SwapEngine(self.store, self.wallet, config=self.config)

    def tearDown(self):
        self.store.engine.dispose()
        self._tmp.cleanup()

    def assertLedgerConsistent(self, user_id, asset):
        amount, total = self.wallet.reconcile(user_id, asset)
        self.assertEqual(amount, total, f"{user_id}/{asset}: balance {amount} != sum of deltas {total}")
