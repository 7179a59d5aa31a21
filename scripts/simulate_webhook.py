"""
Simulate a signed Stripe webhook delivery against a running instance.

Usage:
    python scripts/simulate_webhook.py --secret whsec_test
    python scripts/simulate_webhook.py --channel connect --type payout.paid --account acct_123
    python scripts/simulate_webhook.py --event-id evt_fixed --repeat 2   # second one is a duplicate
    python scripts/simulate_webhook.py --bad-signature
"""
import argparse
import asyncio
import json
import logging
import os
import time
import uuid

import httpx

from webhook_ingest.utils.webhook_signatures import sign_payload

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

BASE_URL = "http://localhost:8000"


def build_event(event_id: str, event_type: str, account: str | None) -> dict:
    """Minimal Stripe event envelope."""
    event = {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "api_version": "2023-10-16",
        "created": int(time.time()),
        "livemode": False,
        "data": {
            "object": {
                "id": f"obj_{uuid.uuid4().hex[:14]}",
                "amount": 2500,
                "currency": "usd",
            },
        },
    }
    if account:
        event["account"] = account
    return event


async def send_event(
    base_url: str, channel: str, body: bytes, secret: str, bad_signature: bool,
) -> httpx.Response:
    signature = sign_payload(body, "whsec_wrong" if bad_signature else secret)
    async with httpx.AsyncClient(timeout=30) as client:
        resp = await client.post(
            f"{base_url}/webhooks/{channel}",
            content=body,
            headers={"Content-Type": "application/json", "Stripe-Signature": signature},
        )
        logger.info("Webhook response: %s %s", resp.status_code, resp.text)
        return resp


async def main():
    parser = argparse.ArgumentParser(description="Simulate signed Stripe webhooks")
    parser.add_argument("--channel", default="main", choices=["main", "connect"])
    parser.add_argument("--type", default="payment_intent.succeeded")
    parser.add_argument("--event-id", default=None)
    parser.add_argument("--account", default=None)
    parser.add_argument("--secret", default=os.environ.get("STRIPE_WEBHOOK_SECRET", ""))
    parser.add_argument("--base-url", default=BASE_URL)
    parser.add_argument("--repeat", type=int, default=1)
    parser.add_argument("--bad-signature", action="store_true")
    args = parser.parse_args()

    if not args.secret:
        parser.error("--secret (or STRIPE_WEBHOOK_SECRET) is required")

    event_id = args.event_id or f"evt_{uuid.uuid4().hex[:24]}"
    body = json.dumps(build_event(event_id, args.type, args.account)).encode("utf-8")

    logger.info("Sending %s %s to /webhooks/%s x%d", args.type, event_id, args.channel, args.repeat)
    for _ in range(args.repeat):
        await send_event(args.base_url, args.channel, body, args.secret, args.bad_signature)


if __name__ == "__main__":
    asyncio.run(main())
