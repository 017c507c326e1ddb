"""
Periodic full profile recompute (drift correction).

Incremental updates drift from a full recompute when ingredients fall out
of the kept top-N or when edits and deletes are never absorbed. This job
recomputes every profile that has absorbed incremental updates since its
last full recompute, and every user with recipes but no stored profile.

Entry points:
    async def run_profile_recompute(storage, profiles, force=False)
    async def recompute_loop(storage, profiles, stop, interval_s)
    python -m services.reco.jobs.profile_recompute [--all]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import time
from typing import Any

from services.reco.config import settings
from services.reco.profile import TasteProfileEngine
from services.reco.storage import RecipeStore

logger = logging.getLogger(__name__)


async def run_profile_recompute(
    storage: RecipeStore,
    profiles: TasteProfileEngine,
    *,
    force: bool = False,
    concurrency: int = settings.profile_recompute_concurrency,
) -> dict[str, Any]:
    start_ts = time.monotonic()
    user_ids = await storage.list_user_ids()
    sem = asyncio.Semaphore(concurrency)

    async def _one(user_id: str) -> str:
        async with sem:
            stored = await storage.get_profile(user_id)
            if not force and stored is not None and stored.updates_since_recompute == 0:
                return "skipped"
            try:
                await profiles.recompute(user_id)
            except Exception:
                logger.error("profile_recompute: failed user=%s", user_id, exc_info=True)
                return "failed"
            return "recomputed"

    outcomes = await asyncio.gather(*(_one(uid) for uid in user_ids))
    duration_ms = int((time.monotonic() - start_ts) * 1000)
    result = {
        "status": "success",
        "users": len(user_ids),
        "recomputed": outcomes.count("recomputed"),
        "skipped": outcomes.count("skipped"),
        "failed": outcomes.count("failed"),
        "duration_ms": duration_ms,
    }
    logger.info(
        "profile_recompute: complete users=%d recomputed=%d skipped=%d failed=%d duration_ms=%d",
        result["users"], result["recomputed"], result["skipped"], result["failed"], duration_ms,
    )
    return result


async def recompute_loop(
    storage: RecipeStore,
    profiles: TasteProfileEngine,
    stop: asyncio.Event,
    interval_s: float = settings.profile_recompute_interval_s,
) -> None:
    """Run the job every interval_s until stop is set."""
    while not stop.is_set():
        try:
            await asyncio.wait_for(stop.wait(), interval_s)
        except asyncio.TimeoutError:
            pass
        if stop.is_set():
            return
        try:
            await run_profile_recompute(storage, profiles)
        except Exception:
            logger.exception("profile_recompute: iteration failed")


# ---------------------------------------------------------------------------
# Standalone entry point
# ---------------------------------------------------------------------------

async def main(argv: list[str] | None = None) -> None:
    """Standalone entry point for running from cron."""
    from dotenv import load_dotenv

    from services.reco.core import build_core

    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    parser = argparse.ArgumentParser(description="Full taste-profile recompute")
    parser.add_argument("--all", action="store_true", help="recompute every profile")
    args = parser.parse_args(argv)

    core = build_core()
    await core.start(run_workers=False)
    try:
        result = await run_profile_recompute(core.storage, core.profiles, force=args.all)
        print(f"profile_recompute complete: {result}")
    finally:
        await core.aclose()


if __name__ == "__main__":
    asyncio.run(main())
