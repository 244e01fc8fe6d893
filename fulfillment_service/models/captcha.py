from datetime import datetime, timezone
from sqlalchemy import String, DateTime, Integer, Boolean, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column

from fulfillment_service.core.database import Base


class CaptchaSession(Base):
    __tablename__ = "captcha_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("orders.id"), unique=True, nullable=False)
    image_url: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    iframe_url: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    solution: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_solved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
