"""
Chaos Simulation Script

Drives the sync engine against a mutating, failure-prone mock upstream
to exercise convergence: new orders appear, kitchens mark items ready,
orders get voided or vanish, and the listing fails at random.

Run from project root (after `pip install -e .`):
    python scripts/simulate.py --cycles 20 --failure-rate 0.2
    python scripts/simulate.py --server            # against a running service

Author: Khalil Bannouri
Version: 1.0.0
"""

import argparse
import asyncio
import random
import sys
import time
import uuid
from datetime import datetime, timezone
from typing import Any

import httpx

from ordersync.core.config import Settings, get_logger, setup_logging
from ordersync.domain.normalize import resolve_fulfillment_filter_key
from ordersync.services.diagnostics import DiagnosticsRecorder
from ordersync.services.orders_api.mock import (
    SAMPLE_CONFIG,
    SAMPLE_MENU,
    MockOrdersApi,
    build_sample_order,
)
from ordersync.services.storage.memory import MemoryKeyValueStore
from ordersync.sync.engine import SyncEngine

# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Configuration
API_BASE_URL = "http://localhost:8001"
TOTAL_CYCLES = 20

logger = get_logger("ordersync.simulate")


# =============================================================================
# UPSTREAM MUTATIONS
# =============================================================================

def new_guid() -> str:
    return str(uuid.uuid4())


def mark_ready(order: dict) -> None:
    """Kitchen bumps every selection of the order to READY."""
    stamp = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    order["modifiedDate"] = stamp
    for check in order.get("checks", []):
        for selection in check.get("selections", []):
            selection["fulfillmentStatus"] = "READY"
            selection["modifiedDate"] = stamp


def mutate_upstream(api: MockOrdersApi, upstream: dict[str, dict]) -> dict[str, int]:
    """Apply one round of random changes to the mock upstream."""
    changes = {"created": 0, "ready": 0, "voided": 0, "removed": 0}

    for _ in range(random.randint(0, 3)):
        guid = new_guid()
        upstream[guid] = build_sample_order(guid, minutes_ago=random.randint(0, 30))
        api.upsert_order(upstream[guid])
        changes["created"] += 1

    guids = list(upstream)
    random.shuffle(guids)

    for guid in guids[:2]:
        if random.random() < 0.5:
            mark_ready(upstream[guid])
            api.upsert_order(upstream[guid])
            changes["ready"] += 1

    if guids and random.random() < 0.15:
        guid = guids[-1]
        api.void_order(guid)
        upstream.pop(guid)
        changes["voided"] += 1
    elif guids and random.random() < 0.15:
        guid = guids[-1]
        api.remove_order(guid)
        upstream.pop(guid)
        changes["removed"] += 1

    return changes


# =============================================================================
# IN-PROCESS SIMULATION
# =============================================================================

async def run_simulation(
    num_cycles: int = TOTAL_CYCLES,
    failure_rate: float = 0.1,
    initial_orders: int = 5,
) -> dict[str, Any]:
    """
    Run the engine against a chaotic mock upstream.

    Args:
        num_cycles: Refresh cycles to run
        failure_rate: Probability of a simulated 503 per upstream call
        initial_orders: Orders seeded before the first cycle
    """
    print("=" * 70)
    print("🔥 CHAOS SIMULATION - ORDER SYNC CONVERGENCE")
    print("=" * 70)
    print(f"📋 Cycles: {num_cycles}")
    print(f"💥 Failure rate: {failure_rate:.0%}")
    print(f"⏰ Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    upstream: dict[str, dict] = {}
    for _ in range(initial_orders):
        guid = new_guid()
        upstream[guid] = build_sample_order(guid, minutes_ago=random.randint(5, 60))

    api = MockOrdersApi(
        orders=list(upstream.values()),
        menu=SAMPLE_MENU,
        config=SAMPLE_CONFIG,
        failure_rate=failure_rate,
        min_latency=0.0,
        max_latency=0.02,
    )
    settings = Settings(
        targeted_fetch_backoff_ms=10,
        stale_ready_retention_ms=60_000,
        stale_active_retention_ms=120_000,
    )
    engine = SyncEngine(api, MemoryKeyValueStore(), DiagnosticsRecorder(), settings=settings)
    await engine.bootstrap()

    reports = []
    start_time = time.time()

    for cycle in range(1, num_cycles + 1):
        changes = mutate_upstream(api, upstream)
        report = await engine.refresh(silent=cycle > 1)
        reports.append(report)

        published = {order.guid for order in engine.orders}
        status = "✅" if report.success else "❌"
        if report.fallback:
            status = "⚠️"
        print(
            f"{status} Cycle {cycle:>3}: {report.message:<55} "
            f"orders={len(published):>3} upstream={len(upstream):>3} "
            f"(+{changes['created']} ready={changes['ready']} "
            f"void={changes['voided']} gone={changes['removed']})"
        )

    # Quiet upstream: a final clean cycle should converge exactly
    api.failure_rate = 0.0
    final = await engine.refresh(silent=False)
    total_time = round(time.time() - start_time, 2)

    published = {order.guid for order in engine.orders}
    expected = set(upstream)
    converged = published == expected

    successful = [r for r in reports if r.success]
    fallbacks = [r for r in reports if r.fallback]
    failed = [r for r in reports if not r.success]

    print("\n" + "=" * 70)
    print("📊 SIMULATION RESULTS")
    print("=" * 70)
    print(f"\n✅ Successful cycles: {len(successful)}/{num_cycles}")
    print(f"⚠️  Fallback cycles: {len(fallbacks)}/{num_cycles}")
    print(f"❌ Failed cycles: {len(failed)}/{num_cycles}")
    print(f"⏱️  Total Time: {total_time}s")

    if successful:
        durations = [r.duration_ms for r in successful]
        print("\n📈 Performance Metrics:")
        print(f"   Average Cycle: {sum(durations) / len(durations):.1f}ms")
        print(f"   Fastest: {min(durations):.1f}ms")
        print(f"   Slowest: {max(durations):.1f}ms")

    buckets: dict[str, int] = {}
    for order in engine.orders:
        key = resolve_fulfillment_filter_key(order)
        label = key.value if key else "other"
        buckets[label] = buckets.get(label, 0) + 1

    print("\n🍳 Published orders by status:")
    for label, count in sorted(buckets.items()):
        print(f"   {label}: {count}")

    print(f"\n🔁 Final cycle: {final.message}")
    print(f"🧭 Cursor: {engine.cursor.isoformat() if engine.cursor else None}")
    print(f"📚 Lookup version: {engine.registry.version}")

    if converged:
        print("\n🎯 Converged: published view matches the upstream")
    else:
        print("\n❌ Diverged from the upstream:")
        print(f"   Missing: {sorted(expected - published)[:5]}")
        print(f"   Extra:   {sorted(published - expected)[:5]}")

    if failed:
        print("\n⚠️  Failed Cycle Details (showing first 5):")
        for report in failed[:5]:
            print(f"   {report.started_at.strftime('%H:%M:%S')}: {report.error}")

    print("=" * 70)

    return {
        "cycles": num_cycles,
        "successful": len(successful),
        "fallbacks": len(fallbacks),
        "failed": len(failed),
        "converged": converged,
        "total_time": total_time,
    }


# =============================================================================
# SERVER CHECKS
# =============================================================================

async def check_server(base_url: str = API_BASE_URL, refreshes: int = 5) -> bool:
    """Poke a running service: health, manual refreshes, published orders."""
    print("\n" + "=" * 70)
    print(f"🧪 CHECKING RUNNING SERVICE AT {base_url}")
    print("=" * 70)

    async with httpx.AsyncClient(base_url=base_url, timeout=30.0) as client:
        print("\n1️⃣ Health Check...")
        try:
            response = await client.get("/health")
        except httpx.HTTPError as e:
            print(f"   ❌ Unreachable: {e}")
            return False
        if response.status_code != 200:
            print(f"   ❌ Failed: {response.text[:100]}")
            return False
        data = response.json()
        print(f"   ✅ Status: {data.get('status')}")
        print(f"   Upstream: {data.get('upstream')}")
        print(f"   Storage: {data.get('storage')}")
        print(f"   Sync: {data.get('sync')}")

        print(f"\n2️⃣ {refreshes} Concurrent Manual Refreshes...")
        responses = await asyncio.gather(
            *(client.post("/api/refresh") for _ in range(refreshes)),
            return_exceptions=True,
        )
        for index, result in enumerate(responses, start=1):
            if isinstance(result, Exception):
                print(f"   ❌ Refresh #{index}: {result}")
                continue
            body = result.json()
            marker = "🔁" if body.get("cancelled") else ("✅" if body.get("success") else "❌")
            print(f"   {marker} Refresh #{index}: {body.get('message')} ({body.get('duration_ms')}ms)")

        print("\n3️⃣ Published Orders...")
        response = await client.get("/api/orders")
        body = response.json()
        print(f"   ✅ {body.get('count')} orders (lookup version {body.get('lookup_version')})")

        print("\n4️⃣ Diagnostics...")
        response = await client.get("/api/diagnostics", params={"limit": 5})
        for event in response.json().get("events", []):
            print(f"   [{event['level']}] {event['type']}")

    print("\n" + "=" * 70)
    return True


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Chaos Simulation Script")
    parser.add_argument("--cycles", type=int, default=TOTAL_CYCLES, help="Refresh cycles")
    parser.add_argument("--failure-rate", type=float, default=0.1, help="Upstream failure probability")
    parser.add_argument("--orders", type=int, default=5, help="Orders seeded before the first cycle")
    parser.add_argument("--server", action="store_true", help="Check a running service instead")
    parser.add_argument("--url", default=API_BASE_URL, help="Service URL for --server")
    args = parser.parse_args()

    setup_logging()

    if args.server:
        ok = asyncio.run(check_server(args.url))
        sys.exit(0 if ok else 1)

    summary = asyncio.run(run_simulation(args.cycles, args.failure_rate, args.orders))
    logger.info(f"Simulation finished: {summary}")
    sys.exit(0 if summary["converged"] else 1)
