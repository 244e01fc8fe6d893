from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_service.core.database import get_db
from fulfillment_service.schemas.captcha import CaptchaResponse, CaptchaSolveRequest, CaptchaSolveResponse
from fulfillment_service.services.captcha import CaptchaService

router = APIRouter(prefix="/captcha", tags=["captcha"])


def get_captcha_service(db: AsyncSession = Depends(get_db)) -> CaptchaService:
    return CaptchaService(db)


@router.get("/{order_id}", response_model=CaptchaResponse)
async def get_captcha(
    order_id: str,
    service: CaptchaService = Depends(get_captcha_service)
) -> CaptchaResponse:
    return await service.get_captcha(order_id)


@router.post("/{order_id}/solve", response_model=CaptchaSolveResponse)
async def solve_captcha(
    order_id: str,
    body: CaptchaSolveRequest,
    service: CaptchaService = Depends(get_captcha_service)
) -> CaptchaSolveResponse:
    return await service.submit_solution(order_id, body.solution)
