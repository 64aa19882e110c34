import logging
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import settings
from app.core.database import init_db
from app.api.deps import get_trade_service, trade_cache
from app.api.routes import admin, listings, offers, trades, users

# ── 定时任务 ────────────────────────────────────────────────────────────────
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from app.services.cleanup import run_expire_job, run_sweep_job

scheduler = AsyncIOScheduler()
logger = logging.getLogger(__name__)
# ────────────────────────────────────────────────────────────────────────────

app = FastAPI(
    title="CS2 Skin Marketplace",
    description="CS2 饰品交易市场：上架、报价、交易状态机与对账",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(listings.router, prefix="/api/listings", tags=["listings"])
app.include_router(offers.router, prefix="/api/offers", tags=["offers"])
app.include_router(trades.router, prefix="/api/trades", tags=["trades"])
app.include_router(users.router, prefix="/api/users", tags=["users"])
app.include_router(admin.router, prefix="/api/admin", tags=["admin"])


async def _expire_job():
    await run_expire_job(get_trade_service())


async def _sweep_job():
    await run_sweep_job(get_trade_service())


@app.on_event("startup")
async def startup():
    await init_db()
    await trade_cache.connect()

    # ── Background jobs ──
    # Offer / seller-response expiry: every N min
    scheduler.add_job(_expire_job, "interval", minutes=settings.expire_interval_minutes,
                      id="expire_stale", misfire_grace_time=300)
    jobs = 1
    # Full cleanup sweep: off unless CLEANUP_INTERVAL_MINUTES > 0
    if settings.cleanup_interval_minutes > 0:
        scheduler.add_job(_sweep_job, "interval", minutes=settings.cleanup_interval_minutes,
                          id="cleanup_sweep", misfire_grace_time=600)
        jobs += 1

    scheduler.start()
    logger.info("APScheduler started with %d background jobs", jobs)

    if settings.cleanup_on_startup:
        result = await run_sweep_job(get_trade_service())
        logger.info("Startup cleanup sweep: %s", result)


@app.on_event("shutdown")
async def shutdown():
    scheduler.shutdown(wait=False)
    await trade_cache.close()


@app.get("/health")
async def health():
    return {"status": "ok", "version": "0.1.0", "cache_enabled": trade_cache.enabled}


if __name__ == "__main__":
    uvicorn.run("main:app", host=settings.host, port=settings.port, reload=True)
