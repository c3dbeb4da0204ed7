"""Publish a `billing.access.granted` envelope directly to Kafka.

Useful for duplicate-delivery testing of the referral reward consumer: replay
the same `--event-id` twice and the referrer must be credited only once.
"""

import argparse
import asyncio
import json
from datetime import datetime, timezone
from uuid import uuid4

from aiokafka import AIOKafkaProducer


async def publish(bootstrap_servers: str, topic: str, envelope: dict) -> None:
    """Open producer, publish one message, close producer."""

    producer = AIOKafkaProducer(bootstrap_servers=bootstrap_servers)
    await producer.start()
    try:
        await producer.send_and_wait(
            topic,
            json.dumps(envelope).encode("utf-8"),
            key=envelope["aggregate_id"].encode("utf-8"),
        )
    finally:
        await producer.stop()


def main() -> None:
    parser = argparse.ArgumentParser(description="Publish an access-granted event to Kafka.")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--topic", default="billing.access.granted")
    parser.add_argument("--account-id", required=True)
    parser.add_argument("--pack", default="teOhi", choices=["teOhi", "umete"])
    parser.add_argument("--event-id", default=None, help="Reuse an event id to simulate redelivery")
    args = parser.parse_args()

    aggregate_id = str(uuid4())
    envelope = {
        "event_id": args.event_id or str(uuid4()),
        "event_type": "billing.access.granted",
        "aggregate_id": aggregate_id,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "trace_id": str(uuid4()),
        "payload": {
            "account_id": args.account_id,
            "pack": args.pack,
            "tier": "member" if args.pack == "teOhi" else "premium",
            "source": "manual_replay",
            "credits": 0,
        },
    }
    asyncio.run(publish(args.bootstrap_servers, args.topic, envelope))
    print(f"Published event_id={envelope['event_id']} to topic={args.topic}")


if __name__ == "__main__":
    main()
