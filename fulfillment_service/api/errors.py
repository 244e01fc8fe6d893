import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from fulfillment_service.core.exceptions import (
    CaptchaNotFoundError,
    ExternalApiError,
    ExternalAutomationError,
    FulfillmentError,
    OrderNotFoundError,
)

logger = logging.getLogger(__name__)


def status_for(error: FulfillmentError) -> int:
    if isinstance(error, (OrderNotFoundError, CaptchaNotFoundError)):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, ExternalApiError):
        return status.HTTP_502_BAD_GATEWAY
    if isinstance(error, ExternalAutomationError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_400_BAD_REQUEST


async def fulfillment_error_handler(request: Request, exc: FulfillmentError) -> JSONResponse:
    code = status_for(exc)
    if code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=code, content={"detail": exc.message})


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(FulfillmentError, fulfillment_error_handler)
