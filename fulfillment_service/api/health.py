from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_service.core.broker import broker
from fulfillment_service.core.database import get_db
from fulfillment_service.services.job_queue import job_queue

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(db: AsyncSession = Depends(get_db)) -> dict[str, str | dict[str, str]]:
    checks: dict[str, str] = {}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = "healthy"
    except Exception as e:
        checks["database"] = f"unhealthy: {e}"

    checks["rabbitmq"] = "healthy" if broker.is_connected else "unhealthy: not connected"
    checks["job_queue"] = "healthy" if job_queue.is_consuming else "unhealthy: not consuming"

    healthy = all(check == "healthy" for check in checks.values())
    return {"status": "healthy" if healthy else "unhealthy", "checks": checks}
