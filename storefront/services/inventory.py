import logging
from dataclasses import dataclass
from typing import Iterable

import httpx

from storefront.config import settings
from storefront.schemas.checkout import CartLineIn

logger = logging.getLogger(__name__)

DEFAULT_SHORTAGE = "Not enough stock for this order"


@dataclass(frozen=True)
class InventoryResult:
    ok: bool
    message: str | None = None


def validation_payload(lines: Iterable[CartLineIn]) -> list[dict]:
    return [
        {
            "product_id": l.product_id,
            "quantity": l.quantity,
            "is_composite": l.is_composite,
            "component_product_ids": list(l.component_product_ids) if l.is_composite else [],
        }
        for l in lines
    ]


class InventoryValidator:
    """Client for the stock service; one call per checkout attempt."""

    def __init__(self, base_url: str = "", timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def validate(self, lines: Iterable[CartLineIn]) -> InventoryResult:
        if not self.base_url:
            return InventoryResult(ok=True)
        payload = {"items": validation_payload(lines)}
        try:
            with httpx.Client(timeout=self.timeout) as client:
                r = client.post(f"{self.base_url}/validate", json=payload)
                r.raise_for_status()
                data = r.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("inventory validation unavailable: %s", e)
            return InventoryResult(ok=False, message="Could not verify stock right now, please try again")
        if data.get("ok"):
            return InventoryResult(ok=True)
        return InventoryResult(ok=False, message=data.get("message") or DEFAULT_SHORTAGE)


def get_inventory_validator() -> InventoryValidator:
    return InventoryValidator(settings.INVENTORY_URL, settings.HTTP_TIMEOUT)
