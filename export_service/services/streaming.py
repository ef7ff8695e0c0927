"""Cursor-driven CSV producer and the optional gzip transform."""

from __future__ import annotations

import logging
import zlib
from typing import Iterable, Iterator, Optional, Sequence

from sqlalchemy.orm import sessionmaker

from ..config import EXPORT_PAGE_SIZE
from ..db import session_scope
from .adapters import DateRange, QueryAdapter, normalize_rows
from .formatting import ExportFormatters
from .renderers import CsvStreamWriter

logger = logging.getLogger(__name__)


def iter_csv_export(
    session_factory: sessionmaker,
    adapter: QueryAdapter,
    date_range: DateRange,
    headers: Sequence[str],
    formatters: ExportFormatters,
    page_size: int = EXPORT_PAGE_SIZE,
) -> Iterator[bytes]:
    """Yield the CSV export one cursor page at a time.

    The header is the first chunk. Each subsequent pull runs exactly one page
    query in its own session; an empty page ends the stream. Closing the
    generator stops any further queries.
    """
    writer = CsvStreamWriter(headers)
    cursor: Optional[int] = None
    pages = 0
    rows_written = 0
    skipped = 0
    completed = False
    try:
        yield writer.header().encode("utf-8")
        while True:
            with session_scope(session_factory) as session:
                records = adapter.fetch_cursor_page(
                    session, date_range, cursor, page_size
                )
                if not records:
                    completed = True
                    return
                rows, page_skipped = normalize_rows(adapter, records, formatters)
                cursor = adapter.cursor_of(records[-1])
            pages += 1
            rows_written += len(rows)
            skipped += page_skipped
            logger.debug(
                "Streamed %s page %d (%d rows, cursor=%s)",
                adapter.domain,
                pages,
                len(rows),
                cursor,
            )
            yield writer.write_batch(rows).encode("utf-8")
    except GeneratorExit:
        logger.info(
            "Client left %s export after %d pages; stopping", adapter.domain, pages
        )
        raise
    except Exception:
        logger.exception(
            "Streamed %s export failed after %d pages", adapter.domain, pages
        )
        raise
    finally:
        if completed:
            logger.info(
                "Streamed %s export finished: %d rows in %d pages (skipped=%d)",
                adapter.domain,
                rows_written,
                pages,
                skipped,
            )


def gzip_chunks(chunks: Iterable[bytes], level: int = 6) -> Iterator[bytes]:
    """Compress ``chunks`` into one gzip member, flushing after each chunk."""
    compressor = zlib.compressobj(level, zlib.DEFLATED, 16 + zlib.MAX_WBITS)
    source = iter(chunks)
    try:
        for chunk in source:
            data = compressor.compress(chunk) + compressor.flush(zlib.Z_SYNC_FLUSH)
            if data:
                yield data
        yield compressor.flush(zlib.Z_FINISH)
    finally:
        close = getattr(source, "close", None)
        if close is not None:
            close()


__all__ = ["gzip_chunks", "iter_csv_export"]
