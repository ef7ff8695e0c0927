"""Per-domain query adapters feeding the export renderers.

Every adapter exposes the same contract so the transport code never branches
on the domain name:

* ``fetch_buffered`` returns at most ``BUFFERED_EXPORT_LIMIT`` records in
  ascending primary-key order for one-shot exports.
* ``fetch_cursor_page`` returns the page strictly after ``cursor`` in the
  same order, for streamed exports.
* ``normalize`` maps one record onto the domain's canonical header list.

Both fetch paths apply the same date filter and both produce rows through
``normalize``, so a record renders identically whichever path loaded it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import Select, select
from sqlalchemy.orm import Session, joinedload

from ..config import BUFFERED_EXPORT_LIMIT, EXPORT_PAGE_SIZE
from ..models import (
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
from .formatting import ExportFormatters, to_decimal

logger = logging.getLogger(__name__)

NormalizedRow = Dict[str, str]

END_OF_DAY = time(23, 59, 59, 999000)


@dataclass(frozen=True)
class DateRange:
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @classmethod
    def from_dates(cls, start: Optional[date], end: Optional[date]) -> "DateRange":
        return cls(
            start=datetime.combine(start, time.min) if start else None,
            end=datetime.combine(end, END_OF_DAY) if end else None,
        )

    def as_filters(self) -> Dict[str, Optional[str]]:
        return {
            "startDate": self.start.date().isoformat() if self.start else None,
            "endDate": self.end.date().isoformat() if self.end else None,
        }


def related(record: Any, *path: str) -> str:
    """Walk ``path`` through relationships, returning ``""`` on any gap."""
    value = record
    for attribute in path:
        if value is None:
            return ""
        value = getattr(value, attribute, None)
    if value is None:
        return ""
    return str(value)


def _text(value: Any) -> str:
    return "" if value is None else str(value)


class QueryAdapter:
    domain: str = ""
    headers: Tuple[str, ...] = ()
    model: Any = None

    def date_column(self) -> Any:
        return self.model.created_at

    def statement(self) -> Select:
        return select(self.model)

    def _filtered(self, date_range: DateRange) -> Select:
        stmt = self.statement()
        column = self.date_column()
        if date_range.start is not None:
            stmt = stmt.where(column >= date_range.start)
        if date_range.end is not None:
            stmt = stmt.where(column <= date_range.end)
        return stmt.order_by(self.model.id.asc())

    def fetch_buffered(
        self,
        session: Session,
        date_range: DateRange,
        limit: int = BUFFERED_EXPORT_LIMIT,
        offset: int = 0,
    ) -> List[Any]:
        capped = max(0, min(int(limit), BUFFERED_EXPORT_LIMIT))
        stmt = self._filtered(date_range).offset(max(0, offset)).limit(capped)
        return list(session.execute(stmt).unique().scalars())

    def fetch_cursor_page(
        self,
        session: Session,
        date_range: DateRange,
        cursor: Optional[int],
        page_size: int = EXPORT_PAGE_SIZE,
    ) -> List[Any]:
        stmt = self._filtered(date_range)
        if cursor is not None:
            stmt = stmt.where(self.model.id > cursor)
        stmt = stmt.limit(page_size)
        return list(session.execute(stmt).unique().scalars())

    def cursor_of(self, record: Any) -> int:
        return int(record.id)

    def fields(self, record: Any, fmt: ExportFormatters) -> Dict[str, str]:
        raise NotImplementedError

    def normalize(self, record: Any, fmt: ExportFormatters) -> NormalizedRow:
        values = self.fields(record, fmt)
        return {header: _text(values.get(header)) for header in self.headers}

    def blank_row(self) -> NormalizedRow:
        return {header: "" for header in self.headers}

    def summarize(self, records: Sequence[Any], fmt: ExportFormatters) -> Dict[str, str]:
        return {}


class ServicesAdapter(QueryAdapter):
    domain = "services"
    headers = ("ID", "Type", "Status", "Customer", "Created")
    model = AutomotiveService

    def statement(self) -> Select:
        return select(AutomotiveService).options(
            joinedload(AutomotiveService.customer).joinedload(Customer.user)
        )

    def fields(self, record: AutomotiveService, fmt: ExportFormatters) -> Dict[str, str]:
        return {
            "ID": record.id,
            "Type": record.service_type,
            "Status": record.status,
            "Customer": related(record, "customer", "user", "name"),
            "Created": fmt.date(record.created_at),
        }


class InvoicesAdapter(QueryAdapter):
    domain = "invoices"
    headers = ("Number", "Customer", "Status", "Total", "Paid", "DueDate")
    model = Invoice

    def statement(self) -> Select:
        return select(Invoice).options(
            joinedload(Invoice.customer).joinedload(Customer.user)
        )

    def fields(self, record: Invoice, fmt: ExportFormatters) -> Dict[str, str]:
        return {
            "Number": record.invoice_number,
            "Customer": related(record, "customer", "user", "name"),
            "Status": record.payment_status,
            "Total": fmt.currency(record.total),
            "Paid": fmt.currency(record.amount_paid),
            "DueDate": fmt.date(record.due_date),
        }

    def summarize(self, records: Sequence[Invoice], fmt: ExportFormatters) -> Dict[str, str]:
        total = sum((to_decimal(r.total) for r in records), Decimal("0"))
        paid = sum((to_decimal(r.amount_paid) for r in records), Decimal("0"))
        return {
            "Invoice Total": fmt.currency(total),
            "Invoice Paid": fmt.currency(paid),
        }


class CustomersAdapter(QueryAdapter):
    domain = "customers"
    headers = ("Name", "Email", "Phone", "Created")
    model = Customer

    def statement(self) -> Select:
        return select(Customer).options(joinedload(Customer.user))

    def fields(self, record: Customer, fmt: ExportFormatters) -> Dict[str, str]:
        return {
            "Name": related(record, "user", "name"),
            "Email": related(record, "user", "email"),
            "Phone": related(record, "user", "phone"),
            "Created": fmt.date(getattr(record.user, "created_at", None)),
        }


class VehiclesAdapter(QueryAdapter):
    domain = "vehicles"
    headers = ("ID", "Make", "Model", "Year", "LicensePlate", "Customer", "Created")
    model = Vehicle

    def statement(self) -> Select:
        return select(Vehicle).options(
            joinedload(Vehicle.customer).joinedload(Customer.user)
        )

    def fields(self, record: Vehicle, fmt: ExportFormatters) -> Dict[str, str]:
        return {
            "ID": record.id,
            "Make": record.make,
            "Model": record.model,
            "Year": record.year,
            "LicensePlate": record.license_plate,
            "Customer": related(record, "customer", "user", "name"),
            "Created": fmt.date(record.created_at),
        }


class PropertiesAdapter(QueryAdapter):
    domain = "properties"
    headers = ("ID", "Title", "Type", "Status", "City", "Price", "ListedBy", "Created")
    model = Property

    def statement(self) -> Select:
        return select(Property).options(joinedload(Property.listed_by))

    def fields(self, record: Property, fmt: ExportFormatters) -> Dict[str, str]:
        return {
            "ID": record.id,
            "Title": record.title,
            "Type": record.property_type,
            "Status": record.status,
            "City": record.city,
            "Price": fmt.currency(record.price),
            "ListedBy": related(record, "listed_by", "name"),
            "Created": fmt.date(record.created_at),
        }


class InquiriesAdapter(QueryAdapter):
    domain = "inquiries"
    headers = (
        "ID",
        "Property",
        "Customer",
        "Email",
        "Phone",
        "Message",
        "Status",
        "Created",
    )
    model = PropertyInquiry

    def statement(self) -> Select:
        return select(PropertyInquiry).options(
            joinedload(PropertyInquiry.property),
            joinedload(PropertyInquiry.customer).joinedload(Customer.user),
        )

    def fields(self, record: PropertyInquiry, fmt: ExportFormatters) -> Dict[str, str]:
        return {
            "ID": record.id,
            "Property": related(record, "property", "title"),
            "Customer": related(record, "customer", "user", "name"),
            "Email": related(record, "customer", "user", "email"),
            "Phone": related(record, "customer", "user", "phone"),
            "Message": record.message,
            "Status": record.status,
            "Created": fmt.date(record.created_at),
        }


class EmergenciesAdapter(QueryAdapter):
    domain = "emergencies"
    headers = (
        "ID",
        "Title",
        "User",
        "Phone",
        "Status",
        "Priority",
        "Location",
        "ResolvedAt",
        "Created",
    )
    model = EmergencyRequest

    def statement(self) -> Select:
        return select(EmergencyRequest).options(joinedload(EmergencyRequest.user))

    def fields(self, record: EmergencyRequest, fmt: ExportFormatters) -> Dict[str, str]:
        return {
            "ID": record.id,
            "Title": record.title,
            "User": related(record, "user", "name"),
            "Phone": related(record, "user", "phone"),
            "Status": record.status,
            "Priority": record.priority,
            "Location": record.location,
            "ResolvedAt": fmt.date(record.resolved_at),
            "Created": fmt.date(record.created_at),
        }


class PaymentsAdapter(QueryAdapter):
    domain = "payments"
    headers = (
        "ID",
        "Invoice",
        "Customer",
        "Amount",
        "Method",
        "Reference",
        "RecordedBy",
        "Date",
    )
    model = Payment

    def statement(self) -> Select:
        return select(Payment).options(
            joinedload(Payment.invoice)
            .joinedload(Invoice.customer)
            .joinedload(Customer.user)
        )

    def fields(self, record: Payment, fmt: ExportFormatters) -> Dict[str, str]:
        return {
            "ID": record.id,
            "Invoice": related(record, "invoice", "invoice_number"),
            "Customer": related(record, "invoice", "customer", "user", "name"),
            "Amount": fmt.currency(record.amount),
            "Method": record.method,
            "Reference": record.reference,
            "RecordedBy": record.recorded_by,
            "Date": fmt.date(record.created_at),
        }

    def summarize(self, records: Sequence[Payment], fmt: ExportFormatters) -> Dict[str, str]:
        total = sum((to_decimal(r.amount) for r in records), Decimal("0"))
        return {"Payments Sum": fmt.currency(total)}


class StaffAdapter(QueryAdapter):
    domain = "staff"
    headers = ("Name", "Email", "Phone", "Role", "Created")
    model = User

    def statement(self) -> Select:
        return select(User).where(User.role != "CUSTOMER")

    def fields(self, record: User, fmt: ExportFormatters) -> Dict[str, str]:
        return {
            "Name": record.name,
            "Email": record.email,
            "Phone": record.phone,
            "Role": record.role,
            "Created": fmt.date(record.created_at),
        }


class MessagesAdapter(QueryAdapter):
    domain = "messages"
    headers = ("ID", "Subject", "Sender", "Recipient", "IsRead", "Created")
    model = Message

    def statement(self) -> Select:
        return select(Message).options(
            joinedload(Message.user), joinedload(Message.recipient)
        )

    def fields(self, record: Message, fmt: ExportFormatters) -> Dict[str, str]:
        return {
            "ID": record.id,
            "Subject": record.subject,
            "Sender": related(record, "user", "name") or _text(record.user_id),
            "Recipient": related(record, "recipient", "name")
            or _text(record.recipient_id),
            "IsRead": "Yes" if record.is_read else "No",
            "Created": fmt.date(record.created_at),
        }


ADAPTERS: Dict[str, QueryAdapter] = {
    adapter.domain: adapter
    for adapter in (
        ServicesAdapter(),
        InvoicesAdapter(),
        CustomersAdapter(),
        VehiclesAdapter(),
        PropertiesAdapter(),
        InquiriesAdapter(),
        EmergenciesAdapter(),
        PaymentsAdapter(),
        StaffAdapter(),
        MessagesAdapter(),
    )
}


def get_adapter(domain: str) -> QueryAdapter:
    return ADAPTERS[domain]


def normalize_rows(
    adapter: QueryAdapter, records: Sequence[Any], fmt: ExportFormatters
) -> Tuple[List[NormalizedRow], int]:
    """Normalize ``records``; a failing record becomes a blank row."""
    rows: List[NormalizedRow] = []
    skipped = 0
    for record in records:
        try:
            rows.append(adapter.normalize(record, fmt))
        except Exception:
            skipped += 1
            logger.warning(
                "Failed to normalize %s record id=%s",
                adapter.domain,
                getattr(record, "id", None),
                exc_info=True,
            )
            rows.append(adapter.blank_row())
    return rows, skipped


def select_columns(
    headers: Sequence[str], requested: Optional[Sequence[str]]
) -> List[str]:
    """Return the requested headers in canonical order, or all of them."""
    if not requested:
        return list(headers)
    wanted = set(requested)
    chosen = [header for header in headers if header in wanted]
    return chosen or list(headers)


__all__ = [
    "ADAPTERS",
    "DateRange",
    "NormalizedRow",
    "QueryAdapter",
    "get_adapter",
    "normalize_rows",
    "related",
    "select_columns",
]
