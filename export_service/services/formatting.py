"""Locale-aware currency and date formatting for export rows."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from babel import Locale, UnknownLocaleError
from babel.dates import format_skeleton
from babel.numbers import format_currency, is_currency

from ..config import DEFAULT_CURRENCY, DEFAULT_LOCALE

logger = logging.getLogger(__name__)


def resolve_locale(raw_locale: Any) -> Optional[Locale]:
    text = str(raw_locale or "").strip()
    if not text:
        return None
    try:
        return Locale.parse(text.replace("-", "_"))
    except (UnknownLocaleError, ValueError, TypeError):
        return None


def resolve_currency(raw_code: Any) -> Optional[str]:
    """Return the upper-cased ISO 4217 code, or ``None`` when Babel does not know it."""
    code = str(raw_code or "").strip().upper()
    if not code or not is_currency(code):
        return None
    return code


def to_decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return Decimal("0")


@dataclass(frozen=True)
class ExportFormatters:
    """Currency and date formatting bound to one locale and currency."""

    locale_tag: str = DEFAULT_LOCALE
    currency_code: str = DEFAULT_CURRENCY
    locale: Locale = field(init=False, compare=False, repr=False)

    def __post_init__(self) -> None:
        parsed = resolve_locale(self.locale_tag) or resolve_locale(DEFAULT_LOCALE)
        object.__setattr__(self, "locale", parsed)
        object.__setattr__(
            self,
            "currency_code",
            resolve_currency(self.currency_code) or DEFAULT_CURRENCY,
        )

    def currency(self, amount: Any) -> str:
        return format_currency(
            to_decimal(amount), self.currency_code, locale=self.locale
        )

    def date(self, value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, date) and not isinstance(value, datetime):
            value = datetime(value.year, value.month, value.day)
        if not isinstance(value, datetime):
            return str(value)
        return format_skeleton("yMMdd", value, locale=self.locale)


__all__ = ["ExportFormatters", "resolve_currency", "resolve_locale", "to_decimal"]
