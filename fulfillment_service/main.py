from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fulfillment_service.api.captcha import router as captcha_router
from fulfillment_service.api.errors import register_error_handlers
from fulfillment_service.api.health import router as health_router
from fulfillment_service.api.orders import router as orders_router
from fulfillment_service.api.payments import router as payments_router
from fulfillment_service.automation.browser import browser_pool
from fulfillment_service.core.broker import broker
from fulfillment_service.core.config import settings
from fulfillment_service.core.database import async_session_maker, engine
from fulfillment_service.core.logging import setup_logging
from fulfillment_service.models import Base
from fulfillment_service.services.job_queue import job_queue
from fulfillment_service.services.job_relay import build_job_relay
from fulfillment_service.services.worker import get_worker

job_relay = build_job_relay(async_session_maker, captcha_sweep=lambda: get_worker().fail_expired_captchas())


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    await broker.connect()
    await job_queue.start()
    await job_relay.start()

    yield

    await job_relay.stop()
    await job_queue.stop()
    await browser_pool.close()
    await broker.close()
    await engine.dispose()


app = FastAPI(
    title="Fulfillment Service",
    description="Places paid orders on the merchant site",
    version="0.1.0",
    lifespan=lifespan
)

cors_origins = settings.cors_origins.split(",") if settings.cors_origins else ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)
app.include_router(health_router)
app.include_router(orders_router)
app.include_router(captcha_router)
app.include_router(payments_router)
