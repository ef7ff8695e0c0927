import os
import sys
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from export_service.db import session_scope  # noqa: E402
from export_service.models import (  # noqa: E402
    AutomotiveService,
    Customer,
    EmergencyRequest,
    Invoice,
    Message,
    Payment,
    Property,
    PropertyInquiry,
    User,
    Vehicle,
)

SECRET = "test-secret"
BASE_TIME = datetime(2024, 3, 1, 9, 30)


class FakeCounterStore:
    """Minimal stand-in for the Redis commands the limiter uses."""

    def __init__(self, error=None):
        self.counts: Dict[str, int] = {}
        self.expiries: Dict[str, int] = {}
        self.error = error

    def incr(self, key):
        if self.error is not None:
            raise self.error
        self.counts[key] = self.counts.get(key, 0) + 1
        return self.counts[key]

    def expire(self, key, seconds):
        self.expiries[key] = seconds
        return True


def seed_people(session) -> Dict[str, object]:
    admin = User(name="Ama Mensah", email="ama@example.com", role="ADMIN",
                 phone="+233 20 000 0001", created_at=BASE_TIME)
    tech = User(name="Kofi Boateng", email="kofi@example.com", role="STAFF_AUTO",
                created_at=BASE_TIME + timedelta(hours=1))
    buyer = User(name='Efua "Effie" Owusu', email="efua@example.com", role="CUSTOMER",
                 phone="+233 20 000 0003", created_at=BASE_TIME + timedelta(hours=2))
    session.add_all([admin, tech, buyer])
    session.flush()
    customer = Customer(user=buyer, created_at=BASE_TIME + timedelta(hours=2))
    session.add(customer)
    session.flush()
    return {"admin": admin, "tech": tech, "buyer": buyer, "customer": customer}


def seed_services(session, customer, count: int, start: datetime = BASE_TIME) -> List[int]:
    ids = []
    for index in range(count):
        service = AutomotiveService(
            service_type="OIL_CHANGE" if index % 2 else "BRAKES",
            status="COMPLETED",
            customer=customer,
            created_at=start + timedelta(minutes=index),
        )
        session.add(service)
        session.flush()
        ids.append(service.id)
    return ids


def seed_invoices(session, customer, count: int) -> List[int]:
    ids = []
    for index in range(count):
        invoice = Invoice(
            invoice_number=f"INV-{index + 1:04d}",
            customer=customer,
            payment_status="PAID" if index % 2 else "UNPAID",
            total=Decimal("100.00") + index,
            amount_paid=Decimal("50.00"),
            due_date=BASE_TIME + timedelta(days=30),
            created_at=BASE_TIME + timedelta(days=index),
        )
        session.add(invoice)
        session.flush()
        ids.append(invoice.id)
    return ids


def seed_everything(factory) -> None:
    """One record per domain so every adapter has something to read."""
    with session_scope(factory) as session:
        people = seed_people(session)
        customer = people["customer"]
        seed_services(session, customer, 2)
        seed_invoices(session, customer, 2)
        session.add(Vehicle(make="Toyota", model="Corolla", year=2019,
                            license_plate="GR-1234-20", customer=customer,
                            created_at=BASE_TIME))
        listing = Property(title="Two bed flat", property_type="APARTMENT",
                           status="AVAILABLE", city="Accra", price=Decimal("85000"),
                           listed_by=people["admin"], created_at=BASE_TIME)
        session.add(listing)
        session.add(PropertyInquiry(property=listing, customer=customer,
                                    message="Is parking included?", status="NEW",
                                    created_at=BASE_TIME))
        session.add(EmergencyRequest(title="Breakdown", user=people["buyer"],
                                     status="OPEN", priority="HIGH",
                                     location="Ring Road", created_at=BASE_TIME))
        session.flush()
        invoice = session.query(Invoice).first()
        session.add(Payment(invoice=invoice, amount=Decimal("50.00"), method="MOMO",
                            reference="TX-1", recorded_by="Ama Mensah",
                            created_at=BASE_TIME))
        session.add(Message(subject="Pickup time", user=people["tech"],
                            recipient=people["buyer"], is_read=True,
                            created_at=BASE_TIME))
