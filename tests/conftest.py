"""Shared fixtures: in-memory database, test profile, mock WEB-SRM transport."""

import json

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from config.database import Base
from modules.websrm import models  # noqa: F401  (registers tables on Base)
from modules.websrm.alerts import AlertService
from modules.websrm.client import SrmClient
from modules.websrm.profile import ComplianceProfile
from modules.websrm.queue_service import QueueService


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def profile():
    return ComplianceProfile(
        device_id="POS-TEST-001",
        certification_code="TESTCODE",
        signing_algorithm="HMAC-SHA256",
        shared_secret="test-secret",
        software_version="1.0.0",
        base_url="https://websrm.test",
        network_enabled=True,
        max_attempts=5,
        retry_base_delay=60,
        retry_max_delay=3600,
        lease_seconds=60,
    ).validate()


class RecordingAlerts(AlertService):
    """Alert service that records calls instead of posting."""

    def __init__(self):
        super().__init__(webhook_url="")
        self.permanent = []
        self.circuits = []

    def permanent_failure(self, entry, error):
        self.permanent.append((entry.id, error))
        return super().permanent_failure(entry, error)

    def circuit_opened(self, device_id, cooldown):
        self.circuits.append(device_id)
        return super().circuit_opened(device_id, cooldown)


@pytest.fixture
def alerts():
    return RecordingAlerts()


@pytest.fixture
def service(profile, alerts):
    return QueueService(profile, alerts=alerts)


@pytest.fixture
def sample_order():
    """20.00 subtotal + 1.00 GST + 1.995 QST = 22.995 total."""
    return {
        "id": "ord-7f3a9c21-0001",
        "branch_id": "branch-001",
        "order_type": "dine_in",
        "order_status": "completed",
        "payment_method": "credit_card",
        "items_subtotal": 20.00,
        "discount_amount": 0,
        "gst_amount": 1.00,
        "qst_amount": 1.995,
        "tip_amount": 0,
        "total_amount": 22.995,
        "created_at": "2025-01-06T14:30:00Z",
        "items": [
            {"menu_item_name": "Pizza Margherita", "menu_item_price": 12.00, "quantity": 1, "item_total": 12.00},
            {"menu_item_name": "Café au lait", "menu_item_price": 4.00, "quantity": 2, "item_total": 8.00},
        ],
    }


@pytest.fixture
def sample_closing():
    return {
        "id": "fer-2025-01-06",
        "branch_id": "branch-001",
        "closing_date": "2025-01-06",
        "total_sales": 1250.50,
        "total_refunds": 25.00,
        "net_sales": 1225.50,
        "gst_collected": 61.28,
        "qst_collected": 122.24,
        "transaction_count": 48,
        "terminal_total": 800.00,
        "online_total": 425.50,
        "created_by": "user-42",
    }


def srm_success(request: httpx.Request) -> httpx.Response:
    body = json.loads(request.content)
    id_trans = body.get("idTrans") or body.get("idFer")
    return httpx.Response(200, json={
        "codRetour": "00",
        "idTrans": id_trans,
        "idTransSrm": f"SRM-{id_trans}",
        "dtConfirmation": "20250106093001",
    })


def make_client(profile, *handlers) -> SrmClient:
    """
    SrmClient over httpx.MockTransport. Each call uses the next handler; the
    last one repeats. A handler may raise an httpx exception to simulate
    transport failures.
    """
    calls = []

    def dispatch(request):
        handler = handlers[min(len(calls), len(handlers) - 1)]
        calls.append(request)
        return handler(request)

    client = SrmClient(profile, http=httpx.Client(transport=httpx.MockTransport(dispatch)))
    client.calls = calls
    return client
