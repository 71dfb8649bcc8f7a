#!/usr/bin/env python3
"""
Tests for the outbox worker
"""
import json
import unittest

from confluent_kafka import KafkaException
from sqlalchemy import select

from escrow_service.models import Outbox
from escrow_service.outbox_worker import publish_pending
from tests.support import LedgerTestCase, sell_ad


class StubProducer:
    def __init__(self, fail_topics=()):
        self.fail_topics = set(fail_topics)
        self.messages = []

    def produce(self, topic, value=None):
        if topic in self.fail_topics:
            raise KafkaException("broker unavailable")
        self.messages.append((topic, json.loads(value.decode("utf-8"))))

    def flush(self):
        return 0


class TestOutboxPublishing(LedgerTestCase):

    def setUp(self):
        super().setUp()
        self.wallet.deposit("S", "BTC", "1")
        self.wallet.deposit("U", "BTC", "1")

    def statuses(self):
        with self.store.session() as s:
            return [row.status for row in s.scalars(select(Outbox).order_by(Outbox.id)).all()]

    def test_events_are_published_in_order_and_marked_sent(self):
        trade = self.trades.open_trade(sell_ad("S"), "B", "4500")
        self.trades.submit_payment_proof(trade.id, "B", "/uploads/p.png")
        self.trades.release(trade.id, "S")
        self.swaps.execute_swap("U", "BTC", "USDT", "0.01")

        producer = StubProducer()
        sent = publish_pending(self.store, producer)

        self.assertEqual(sent, 4)
        self.assertEqual([(topic, msg["type"]) for topic, msg in producer.messages], [
            ("trade_events", "TradeOpened"),
            ("trade_events", "TradePaid"),
            ("trade_events", "TradeCompleted"),
            ("swap_events", "SwapCompleted"),
        ])
        self.assertEqual(producer.messages[2][1]["asset_amount"], "0.10000000")
        self.assertEqual(self.statuses(), ["sent"] * 4)
        self.assertEqual(publish_pending(self.store, producer), 0)

    def test_kafka_failure_marks_row_failed(self):
        self.trades.open_trade(sell_ad("S"), "B", "4500")
        self.swaps.execute_swap("U", "BTC", "USDT", "0.01")

        sent = publish_pending(self.store, StubProducer(fail_topics={"swap_events"}))

        self.assertEqual(sent, 1)
        self.assertEqual(self.statuses(), ["sent", "failed"])

    def test_batch_size_limits_one_pass(self):
        for _ in range(3):
            self.trades.open_trade(sell_ad("S"), "B", "100")
        self.assertEqual(publish_pending(self.store, StubProducer(), batch_size=2), 2)
        self.assertEqual(self.statuses(), ["sent", "sent", "new"])


if __name__ == "__main__":
    unittest.main()
