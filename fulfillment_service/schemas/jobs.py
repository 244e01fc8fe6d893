from datetime import datetime, timezone
from enum import Enum
from pydantic import BaseModel, Field

JOB_ROUTING_KEY = "fulfillment.job"


class JobKind(str, Enum):
    FULFILL = "fulfill"
    RESUME = "resume"


class FulfillmentJob(BaseModel):
    order_id: str
    attempt: int = Field(default=1, ge=1)
    kind: JobKind = JobKind.FULFILL
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def next_attempt(self) -> "FulfillmentJob":
        return FulfillmentJob(order_id=self.order_id, attempt=self.attempt + 1, kind=self.kind)
