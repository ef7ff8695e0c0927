"""ORM models read by the exporter, plus the export log and job tables."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from .db import Base


def utc_now() -> datetime:
    """Current UTC time as a naive datetime, matching the naive DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, default="")
    email = Column(String(255), nullable=False, unique=True)
    phone = Column(String(64), nullable=True)
    role = Column(String(32), nullable=False, default="CUSTOMER", index=True)
    created_at = Column(DateTime, nullable=False, default=utc_now, index=True)


class Customer(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now, index=True)

    user = relationship("User")


class AutomotiveService(Base):
    __tablename__ = "automotive_services"

    id = Column(Integer, primary_key=True, autoincrement=True)
    service_type = Column(String(64), nullable=False)
    status = Column(String(32), nullable=False, default="PENDING")
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now, index=True)

    customer = relationship("Customer")


class Invoice(Base):
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, autoincrement=True)
    invoice_number = Column(String(64), nullable=False, unique=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=True)
    payment_status = Column(String(32), nullable=False, default="UNPAID")
    total = Column(Numeric(12, 2), nullable=False, default=0)
    amount_paid = Column(Numeric(12, 2), nullable=False, default=0)
    due_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now, index=True)

    customer = relationship("Customer")


class Vehicle(Base):
    __tablename__ = "vehicles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    make = Column(String(64), nullable=False)
    model = Column(String(64), nullable=False)
    year = Column(Integer, nullable=True)
    license_plate = Column(String(32), nullable=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now, index=True)

    customer = relationship("Customer")


class Property(Base):
    __tablename__ = "properties"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    property_type = Column(String(64), nullable=False)
    status = Column(String(32), nullable=False, default="AVAILABLE")
    city = Column(String(128), nullable=True)
    price = Column(Numeric(14, 2), nullable=False, default=0)
    listed_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now, index=True)

    listed_by = relationship("User")


class PropertyInquiry(Base):
    __tablename__ = "property_inquiries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    property_id = Column(Integer, ForeignKey("properties.id"), nullable=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=True)
    message = Column(Text, nullable=False, default="")
    status = Column(String(32), nullable=False, default="NEW")
    created_at = Column(DateTime, nullable=False, default=utc_now, index=True)

    property = relationship("Property")
    customer = relationship("Customer")


class EmergencyRequest(Base):
    __tablename__ = "emergency_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    status = Column(String(32), nullable=False, default="OPEN")
    priority = Column(String(32), nullable=False, default="NORMAL")
    location = Column(String(255), nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now, index=True)

    user = relationship("User")


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=True)
    amount = Column(Numeric(12, 2), nullable=False, default=0)
    method = Column(String(32), nullable=False, default="CASH")
    reference = Column(String(128), nullable=True)
    recorded_by = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now, index=True)

    invoice = relationship("Invoice")


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subject = Column(String(255), nullable=False, default="")
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    recipient_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utc_now, index=True)

    user = relationship("User", foreign_keys=[user_id])
    recipient = relationship("User", foreign_keys=[recipient_id])


class ExportLog(Base):
    """Append-only record of who exported what."""

    __tablename__ = "export_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    type = Column(String(32), nullable=False, index=True)
    format = Column(String(8), nullable=False)
    filters = Column(Text, nullable=False, default="{}")
    created_at = Column(DateTime, nullable=False, default=utc_now, index=True)


class ExportJob(Base):
    __tablename__ = "export_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    type = Column(String(32), nullable=False)
    format = Column(String(8), nullable=False, default="csv")
    params = Column(Text, nullable=False, default="{}")
    status = Column(String(16), nullable=False, default="PENDING", index=True)
    token = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now, index=True)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)
