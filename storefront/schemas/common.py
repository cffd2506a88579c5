from pydantic import BaseModel
from typing import Optional

class WebhookAck(BaseModel):
    received: bool = True
    status: str
    order_id: Optional[str] = None
