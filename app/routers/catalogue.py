"""
Catalogue Router
Thin product listing and order intake used to exercise the pipeline.
Inventory and credit rules are not enforced here.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from app.core.context import RequestPrincipal
from app.core.dependencies import require_user
from app.core.errors import NotFoundError

router = APIRouter(prefix="/api/v1", tags=["Catalogue"])


class Product(BaseModel):
    id: str
    name: str
    price: Decimal
    sku: str


PRODUCTS: dict[str, Product] = {
    p.id: p
    for p in (
        Product(id="p-100", name="Steel Bracket", price=Decimal("4.50"), sku="BRK-100"),
        Product(id="p-200", name="Hex Bolt M8", price=Decimal("0.35"), sku="BLT-M8"),
        Product(id="p-300", name="Control Panel", price=Decimal("189.00"), sku="CTL-300"),
        Product(id="p-400", name="Cable Gland", price=Decimal("2.10"), sku="CBL-400"),
    )
}

_orders: dict[str, dict] = {}


class OrderItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1, le=10000)


class OrderRequest(BaseModel):
    customer_id: str
    items: list[OrderItem] = Field(..., min_length=1)
    notes: str | None = None


@router.get("/products")
async def list_products(
    limit: int = Query(50, ge=1, le=1000),
    offset: int = Query(0, ge=0),
):
    products = list(PRODUCTS.values())
    return {
        "total": len(products),
        "items": [p.model_dump(mode="json") for p in products[offset:offset + limit]],
    }


@router.post("/orders", status_code=status.HTTP_201_CREATED)
async def create_order(payload: OrderRequest, principal: RequestPrincipal = Depends(require_user)):
    total = Decimal("0")
    lines = []
    for item in payload.items:
        product = PRODUCTS.get(item.product_id)
        if product is None:
            raise NotFoundError("Product", item.product_id)
        line_total = product.price * item.quantity
        total += line_total
        lines.append({"product_id": product.id, "quantity": item.quantity, "line_total": str(line_total)})

    order = {
        "id": str(uuid.uuid4()),
        "customer_id": payload.customer_id,
        "placed_by": principal.user_id,
        "items": lines,
        "total": str(total),
        "created_at": datetime.now(timezone.utc).isoformat(),
    }
    _orders[order["id"]] = order
    return order
