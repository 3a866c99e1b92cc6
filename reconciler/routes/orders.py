from fastapi import APIRouter, BackgroundTasks, Depends
from fastapi.responses import JSONResponse

from reconciler.deps import get_dispatcher, get_reconciler, get_repository, result_response
from reconciler.order_state import HOLD_REASONS, STATUS_DISPLAY, OrderStatus
from reconciler.reconcile import NotificationDispatcher, Reconciler

router = APIRouter(prefix="/orders", tags=["orders"])


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


@router.get("/{order_id}")
async def order_status(order_id: str, repository=Depends(get_repository)) -> JSONResponse:
    """Customer-facing status view with the status timeline, oldest first."""
    order = await repository.get_order(order_id)
    if order is None:
        return JSONResponse(status_code=404, content={"error": f"Order '{order_id}' not found"})
    status = OrderStatus(order["current_status"])
    label, description, progress = STATUS_DISPLAY[status]
    history = await repository.get_history(order_id)
    return JSONResponse(
        status_code=200,
        content={
            "orderId": order_id,
            "status": status.value,
            "label": label,
            "description": description,
            "progress": progress,
            "holdReason": order.get("hold_reason") or HOLD_REASONS.get(status),
            "trackingNumber": order.get("tracking_number"),
            "estimatedDelivery": _iso(order.get("estimated_delivery")),
            "history": [
                {
                    "fromStatus": h["from_status"],
                    "toStatus": h["to_status"],
                    "event": h["event"],
                    "source": h["source"],
                    "notes": h["notes"],
                    "timestamp": _iso(h["created_at"]),
                }
                for h in history
            ],
        },
    )


@router.post("/{order_id}/actions/{event}")
async def customer_action(
    order_id: str,
    event: str,
    background_tasks: BackgroundTasks,
    reconciler: Reconciler = Depends(get_reconciler),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> JSONResponse:
    """Customer-originated lifecycle event, e.g. files_resubmitted after a hold."""
    result = await reconciler.reconcile_customer_action(order_id, event)
    return result_response(result, background_tasks, dispatcher)
