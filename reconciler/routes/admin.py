from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from reconciler.db import DuplicateOrderError
from reconciler.deps import get_registry, get_repository
from reconciler.order_state import OrderStatus
from reconciler.sqs_client import replay_dlq_to_main
from reconciler.vendor_mapping import MappingConfigError, VendorMappingRegistry, VendorStatusMapping

router = APIRouter(prefix="/admin", tags=["admin"])


class CreateOrderBody(BaseModel):
    order_id: str = Field(..., min_length=1, alias="orderId", description="Order accepted by the vendor")
    vendor_id: str = Field(..., min_length=1, alias="vendorId", description="Vendor producing the order")


class MappingEntry(BaseModel):
    vendor_status: str = Field(..., min_length=1, alias="vendorStatus")
    internal_status: OrderStatus = Field(..., alias="internalStatus")
    event: str = Field(..., min_length=1)


@router.post("/orders")
async def create_order(body: CreateOrderBody, repository=Depends(get_repository)) -> JSONResponse:
    """Start tracking an order handed to a vendor. Initial status is Pending."""
    try:
        snapshot = await repository.create_order(body.order_id, body.vendor_id)
    except DuplicateOrderError:
        return JSONResponse(status_code=409, content={"error": f"Order '{body.order_id}' already exists"})
    return JSONResponse(
        status_code=201,
        content={"orderId": body.order_id, "status": snapshot.status.value, "version": snapshot.version},
    )


@router.get("/vendors/{vendor_id}/mappings")
async def get_mappings(vendor_id: str, registry: VendorMappingRegistry = Depends(get_registry)) -> JSONResponse:
    """The table vendor_id resolves against (its override, or the default)."""
    return JSONResponse(
        status_code=200,
        content={
            "vendorId": vendor_id,
            "override": registry.has_override(vendor_id),
            "mappings": [
                {"vendorStatus": m.vendor_status, "internalStatus": m.internal_status.value, "event": m.event}
                for m in registry.mappings_for(vendor_id)
            ],
        },
    )


@router.put("/vendors/{vendor_id}/mappings")
async def register_mappings(
    vendor_id: str,
    entries: list[MappingEntry],
    registry: VendorMappingRegistry = Depends(get_registry),
) -> JSONResponse:
    """Replace vendor_id's status table. Rejected whole if any entry disagrees with the transition table."""
    mappings = [VendorStatusMapping(e.vendor_status, e.internal_status, e.event) for e in entries]
    try:
        registry.register_mapping(vendor_id, mappings)
    except MappingConfigError as e:
        return JSONResponse(status_code=400, content={"error": str(e)})
    return JSONResponse(status_code=200, content={"vendorId": vendor_id, "registered": len(mappings)})


@router.post("/dlq/replay")
async def dlq_replay(limit: int = Query(default=100, ge=1, le=1000)) -> JSONResponse:
    """
    Replay notifications from the SQS DLQ to the main queue.
    Returns number of messages replayed.
    """
    replayed = await replay_dlq_to_main(limit=limit)
    return JSONResponse(
        status_code=200,
        content={"status": "ok", "replayed": replayed},
    )
