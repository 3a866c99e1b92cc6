from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse

from reconciler.config import settings
from reconciler.deps import get_dispatcher, get_reconciler, result_response
from reconciler.metrics import webhooks_received_total
from reconciler.reconcile import NotificationDispatcher, Reconciler

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/{vendor_id}")
async def vendor_webhook(
    vendor_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    reconciler: Reconciler = Depends(get_reconciler),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> JSONResponse:
    """
    Vendor status update. The body must be signed with the vendor's secret
    (hex HMAC-SHA256 of the raw body in the signature header).
    200 = applied or replayed; any other status = not processed, vendor should retry.
    """
    # unconfigured vendor ids share one label so the path cannot inflate metric cardinality
    label = vendor_id if vendor_id in settings.vendor_webhook_secrets else "unregistered"
    webhooks_received_total.labels(vendor_id=label).inc()

    raw_body = await request.body()
    result = await reconciler.reconcile(vendor_id, raw_body, request.headers.get(settings.signature_header))
    return result_response(result, background_tasks, dispatcher)
