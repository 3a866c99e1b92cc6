import pytest
from fastapi.testclient import TestClient

from _helper import (
    VENDOR_ID,
    InMemoryOrderRepository,
    RecordingDispatcher,
    make_reconciler,
    sign,
    signal_body,
)
from reconciler.config import settings
from reconciler.main import app
from reconciler.order_state import OrderStatus
from reconciler.vendor_mapping import VendorMappingRegistry


@pytest.fixture
def repo():
    return InMemoryOrderRepository()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def client(repo, dispatcher):
    # no `with`: the lifespan (Postgres, Redis) is not started
    registry = VendorMappingRegistry()
    app.state.registry = registry
    app.state.repository = repo
    app.state.dispatcher = dispatcher
    app.state.reconciler = make_reconciler(repo, registry=registry)
    return TestClient(app)


def _post_signal(client, order_id, status, vendor_id=VENDOR_ID, secret=None, **kwargs):
    body = signal_body(order_id, status, vendor_id=vendor_id, **kwargs)
    signature = sign(body) if secret is None else sign(body, secret)
    return client.post(
        f"/webhooks/{vendor_id}",
        content=body,
        headers={"Content-Type": "application/json", settings.signature_header: signature},
    )


def test_applied_signal_returns_200_and_queues_notification(client, repo, dispatcher):
    repo.seed("o-1", OrderStatus.PENDING)
    resp = _post_signal(client, "o-1", "Received")

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["data"] == {"internalStatus": "Prepress", "event": "vendor_accepted", "replayed": False}
    assert dispatcher.sent == [("o-1", OrderStatus.PREPRESS)]


def test_replay_returns_200_without_second_notification(client, repo, dispatcher):
    repo.seed("o-1", OrderStatus.PENDING)
    _post_signal(client, "o-1", "received")
    resp = _post_signal(client, "o-1", "received")

    assert resp.status_code == 200
    assert resp.json()["data"]["replayed"] is True
    assert len(dispatcher.sent) == 1


def test_bad_signature_is_401(client, repo, dispatcher):
    repo.seed("o-1", OrderStatus.PENDING)
    resp = _post_signal(client, "o-1", "received", secret="guess")

    assert resp.status_code == 401
    assert resp.json()["errorCode"] == "SignatureValidationFailure"
    assert repo.status_of("o-1") == OrderStatus.PENDING
    assert dispatcher.sent == []


def test_unknown_status_is_422(client, repo):
    repo.seed("o-1", OrderStatus.SHIPPED)
    resp = _post_signal(client, "o-1", "out_for_delivery")

    assert resp.status_code == 422
    assert resp.json()["errorCode"] == "UnknownVendorStatus"
    assert repo.status_of("o-1") == OrderStatus.SHIPPED


def test_invalid_transition_is_409(client, repo):
    repo.seed("o-1", OrderStatus.PENDING)
    resp = _post_signal(client, "o-1", "shipped")
    assert resp.status_code == 409
    assert resp.json()["errorCode"] == "InvalidTransition"


def test_unknown_order_is_404(client):
    assert _post_signal(client, "nope", "received").status_code == 404


def test_customer_resubmission(client, repo, dispatcher):
    repo.seed("o-1", OrderStatus.ON_HOLD_MISSING_FILE)
    resp = client.post("/orders/o-1/actions/files_resubmitted")

    assert resp.status_code == 200
    assert resp.json()["data"]["internalStatus"] == "Prepress"
    assert dispatcher.sent == []


def test_customer_cannot_ship(client, repo):
    repo.seed("o-1", OrderStatus.PRODUCTION)
    resp = client.post("/orders/o-1/actions/order_shipped")
    assert resp.status_code == 403
    assert resp.json()["errorCode"] == "ForbiddenEvent"


def test_order_status_view(client, repo):
    client.post("/admin/orders", json={"orderId": "o-1", "vendorId": VENDOR_ID})
    _post_signal(client, "o-1", "received")
    _post_signal(client, "o-1", "hold_text_edge")

    resp = client.get("/orders/o-1")
    assert resp.status_code == 200
    view = resp.json()
    assert view["status"] == "OnHold_TextNearEdge"
    assert view["label"] == "On Hold"
    assert view["holdReason"] == "Text is too close to the trim edge"
    assert [h["toStatus"] for h in view["history"]] == ["Pending", "Prepress", "OnHold_TextNearEdge"]


def test_order_status_view_unknown_order(client):
    assert client.get("/orders/missing").status_code == 404


def test_create_order_twice_conflicts(client, repo):
    first = client.post("/admin/orders", json={"orderId": "o-1", "vendorId": VENDOR_ID})
    second = client.post("/admin/orders", json={"orderId": "o-1", "vendorId": VENDOR_ID})

    assert first.status_code == 201
    assert first.json() == {"orderId": "o-1", "status": "Pending", "version": 0}
    assert second.status_code == 409


def test_register_and_read_vendor_mappings(client, repo):
    resp = client.put(
        f"/admin/vendors/{VENDOR_ID}/mappings",
        json=[{"vendorStatus": "PRESS", "internalStatus": "Production", "event": "files_approved"}],
    )
    assert resp.status_code == 200
    assert resp.json() == {"vendorId": VENDOR_ID, "registered": 1}

    listed = client.get(f"/admin/vendors/{VENDOR_ID}/mappings").json()
    assert listed["override"] is True
    assert listed["mappings"] == [{"vendorStatus": "press", "internalStatus": "Production", "event": "files_approved"}]

    repo.seed("o-1", OrderStatus.PREPRESS)
    assert _post_signal(client, "o-1", "press").status_code == 200
    assert repo.status_of("o-1") == OrderStatus.PRODUCTION


def test_inconsistent_mapping_is_400(client):
    resp = client.put(
        "/admin/vendors/v/mappings",
        json=[{"vendorStatus": "done", "internalStatus": "Delivered", "event": "order_shipped"}],
    )
    assert resp.status_code == 400
    assert client.get("/admin/vendors/v/mappings").json()["override"] is False


def test_health_and_metrics(client, repo):
    repo.seed("o-1", OrderStatus.PENDING)
    _post_signal(client, "o-1", "received")
    assert client.get("/health").json() == {"status": "ok"}
    metrics = client.get("/metrics").text
    assert "reconcile_outcomes_total" in metrics
    assert "webhooks_received_total" in metrics
