"""
Shared fixtures: in-memory database, settings, factories and an API client
with dependencies overridden.
"""

import uuid
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ticketdesk import models  # noqa: F401
from ticketdesk.config import Settings, get_settings
from ticketdesk.database import Base, get_db
from ticketdesk.models.booking import Booking, BookingStatus
from ticketdesk.models.message_attachment import MessageAttachment
from ticketdesk.services.storage import LocalBlobStore

WEBHOOK_SECRET = "test-webhook-secret"


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(db_engine):
    session = sessionmaker(bind=db_engine, autocommit=False, autoflush=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        environment="test",
        database_url="sqlite://",
        bokun_access_key="access-key",
        bokun_secret_key="secret-key",
        bokun_webhook_secret=WEBHOOK_SECRET,
        bokun_request_delay_ms=0,
        twilio_account_sid="AC00000000000000000000000000000000",
        twilio_auth_token="twilio-token",
        twilio_whatsapp_from="+390550000000",
        twilio_sms_from="+390550000001",
        twilio_validate_signatures=False,
        sendgrid_api_key="SG.test",
        public_base_url="https://tickets.example.com",
        storage_local_path=str(tmp_path / "blobs"),
        scheduler_enabled=False,
    )


@pytest.fixture
def store(settings):
    return LocalBlobStore(settings.storage_local_path)


@pytest.fixture
def make_booking(db):
    def factory(**overrides):
        values = {
            "bokun_booking_id": f"UFF-{uuid.uuid4().hex[:8].upper()}",
            "bokun_product_id": "961801",
            "product_name": "Uffizi Gallery Tour",
            "customer_name": "Maria Rossi",
            "customer_email": "maria@example.com",
            "customer_phone": "+393331234567",
            "tour_date": datetime.utcnow() + timedelta(days=10),
            "pax": 2,
            "status": BookingStatus.PENDING_TICKET.value,
        }
        values.update(overrides)
        booking = Booking(**values)
        db.add(booking)
        db.commit()
        db.refresh(booking)
        return booking
    return factory


@pytest.fixture
def make_attachment(db, store):
    def factory(booking, name="ticket.pdf", data=b"%PDF-1.4 test ticket"):
        path = f"attachments/{booking.id}/{name}"
        size = store.put(path, data, "application/pdf")
        attachment = MessageAttachment(
            booking_id=booking.id,
            original_name=name,
            stored_name=name,
            storage_path=path,
            mime_type="application/pdf",
            size=size,
        )
        db.add(attachment)
        db.commit()
        db.refresh(attachment)
        return attachment
    return factory


@pytest.fixture
def scheduler():
    return MagicMock()


@pytest.fixture
def client(db, settings, store, scheduler):
    from ticketdesk.main import app
    from ticketdesk.services.scheduler import get_scheduler
    from ticketdesk.utils.dependencies import Operator, get_current_operator, get_store
    from ticketdesk.utils.rate_limiter import limiter

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_scheduler] = lambda: scheduler
    app.dependency_overrides[get_current_operator] = lambda: Operator(id="op-1", name="Test Operator")
    limiter.enabled = False

    yield TestClient(app)

    app.dependency_overrides.clear()
    limiter.enabled = True
