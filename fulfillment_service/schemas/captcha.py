from datetime import datetime
from pydantic import BaseModel, Field


class CaptchaResponse(BaseModel):
    order_id: str
    image_url: str | None = None
    iframe_url: str | None = None
    expires_at: datetime


class CaptchaSolveRequest(BaseModel):
    solution: str = Field(min_length=1)


class CaptchaSolveResponse(BaseModel):
    success: bool
    order_id: str
    message: str = "Captcha solution submitted successfully"
