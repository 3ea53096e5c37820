"""Fire concurrent checkout submissions sharing one idempotency key.

Against a healthy service every response must report the same checkout id and
at most one of them may have `idempotent_reused=false`.
"""

import argparse
import asyncio
import statistics
import time
from collections import Counter
from uuid import uuid4

import httpx


def build_payload(lead_id: str, course_slug: str, card_number: str) -> dict:
    return {
        "courseSlug": course_slug,
        "leadId": lead_id,
        "card": {
            "holder_name": "BURST TEST",
            "number": card_number,
            "cvv": "123",
            "exp_month": "12",
            "exp_year": str(time.gmtime().tm_year + 3),
        },
    }


async def send_one(client: httpx.AsyncClient, base_url: str, payload: dict, key: str):
    """Send one checkout and return (status_code, checkout_id, reused, latency_ms)."""

    started = time.perf_counter()
    try:
        resp = await client.post(
            f"{base_url}/api/payments",
            json=payload,
            headers={"Idempotency-Key": key, "X-Request-Id": str(uuid4())},
        )
        latency = (time.perf_counter() - started) * 1000
        body = resp.json() if resp.headers.get("content-type", "").startswith("application/json") else {}
        return resp.status_code, body.get("checkout_id"), body.get("idempotent_reused"), latency
    except httpx.HTTPError:
        latency = (time.perf_counter() - started) * 1000
        return 599, None, None, latency


async def run(total: int, base_url: str, lead_id: str, course_slug: str, card_number: str, key: str):
    payload = build_payload(lead_id, course_slug, card_number)
    async with httpx.AsyncClient(timeout=30.0) as client:
        results = await asyncio.gather(*(send_one(client, base_url, payload, key) for _ in range(total)))

    codes = Counter(code for code, _, _, _ in results)
    checkout_ids = {checkout_id for _, checkout_id, _, _ in results if checkout_id}
    fresh = sum(1 for _, _, reused, _ in results if reused is False)
    lats = [latency for _, _, _, latency in results]

    print(f"idempotency_key={key}")
    print(f"total={total}")
    print(f"status_codes={dict(codes)}")
    print(f"distinct_checkout_ids={len(checkout_ids)}")
    print(f"fresh_charges={fresh}")
    print(f"avg_ms={statistics.mean(lats):.2f}")
    print(f"max_ms={max(lats):.2f}")
    if len(checkout_ids) > 1 or fresh > 1:
        raise SystemExit("duplicate charge detected")


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--total", type=int, default=20)
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--lead-id", required=True)
    parser.add_argument("--course-slug", required=True)
    parser.add_argument("--card-number", default="4242424242424242")
    parser.add_argument("--idempotency-key", default=None)
    args = parser.parse_args()
    asyncio.run(
        run(
            args.total,
            args.base_url,
            args.lead_id,
            args.course_slug,
            args.card_number,
            args.idempotency_key or f"burst-{uuid4()}",
        )
    )
