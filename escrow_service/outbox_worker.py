import logging
import time

from sqlalchemy import select, update
from confluent_kafka import KafkaException

from common.kafka import get_producer
from common.settings import settings
from escrow_service.db import make_engine
from escrow_service.ledger_store import LedgerStore
from escrow_service.models import Outbox

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.5

def publish_pending(store: LedgerStore, producer, batch_size: int = 50) -> int:
    """Publish one batch of new outbox rows in insertion order; returns how many were sent."""
    sent = 0
    with store.session() as db:
        rows = db.execute(
            select(Outbox).where(Outbox.status == "new").order_by(Outbox.id).limit(batch_size)
        ).scalars().all()
        for row in rows:
            try:
                producer.produce(row.topic, value=row.payload.encode("utf-8"))
                producer.flush()
                db.execute(update(Outbox).where(Outbox.id == row.id).values(status="sent"))
                sent += 1
            except KafkaException as e:
                logger.error(f"❌ Failed to publish outbox row {row.id} to {row.topic}: {e}")
                db.execute(update(Outbox).where(Outbox.id == row.id).values(status="failed"))
            db.commit()
    if sent:
        logger.info(f"📤 Published {sent} outbox events")
    return sent

def run(store: LedgerStore = None, producer=None):
    store = store or LedgerStore(make_engine())
    producer = producer or get_producer()
    logger.info("🚀 Outbox worker started")
    while True:
        try:
            publish_pending(store, producer)
        except Exception:
            logger.exception("Outbox publishing pass failed, retrying")
        time.sleep(POLL_INTERVAL)

if __name__ == "__main__":
    logging.basicConfig(level=settings.log_level)
    run()
