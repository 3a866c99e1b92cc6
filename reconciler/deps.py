"""
FastAPI dependencies (collaborators live on app.state, wired in the lifespan) and the
mapping from reconcile outcomes to HTTP responses.
"""
from fastapi import BackgroundTasks, Request
from fastapi.responses import JSONResponse

from reconciler.reconcile import NotificationDispatcher, ReconcileError, ReconcileResult, Reconciler
from reconciler.vendor_mapping import VendorMappingRegistry

# Anything but 2xx tells the vendor the signal was not processed, so it keeps retrying.
ERROR_STATUS_CODES: dict[ReconcileError, int] = {
    ReconcileError.SIGNATURE_VALIDATION_FAILURE: 401,
    ReconcileError.MALFORMED_SIGNAL: 400,
    ReconcileError.FORBIDDEN_EVENT: 403,
    ReconcileError.ORDER_NOT_FOUND: 404,
    ReconcileError.INVALID_TRANSITION: 409,
    ReconcileError.PERSISTENCE_CONFLICT: 409,
    ReconcileError.UNKNOWN_VENDOR_STATUS: 422,
}


def get_reconciler(request: Request) -> Reconciler:
    return request.app.state.reconciler


def get_repository(request: Request):
    return request.app.state.repository


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher


def get_registry(request: Request) -> VendorMappingRegistry:
    return request.app.state.registry


def result_response(
    result: ReconcileResult,
    background_tasks: BackgroundTasks,
    dispatcher: NotificationDispatcher,
) -> JSONResponse:
    """Status is already committed here; the notification runs after the response is sent."""
    if result.success:
        if result.notify_customer:
            background_tasks.add_task(dispatcher.notify, result.order_id, result.internal_status)
        return JSONResponse(status_code=200, content=result.to_response())
    return JSONResponse(status_code=ERROR_STATUS_CODES.get(result.error_code, 400), content=result.to_response())
