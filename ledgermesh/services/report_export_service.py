"""
LedgerMesh - Consolidated Report Export Service

CSV and PDF exports of consolidated view models.

CSV is streamed in chunks flushed every N data rows with CRLF line endings:
metadata comment lines, header, data rows, a blank separator row, then
totals rows.

PDF renders the view model through a Jinja2 template and posts the HTML to
an external Chromium-based renderer (Gotenberg compatible). A no-op
renderer stands in when PDF export is disabled.
"""

import asyncio
import csv
import io
import logging
from decimal import Decimal
from pathlib import Path
from typing import Iterator, List, Optional, Protocol, Sequence

import httpx
from fastapi import status
from fastapi.templating import Jinja2Templates

from ledgermesh.config import Settings
from ledgermesh.schemas.consolidation import (
    ConsolBSViewModel, ConsolPLViewModel, ConsolTBViewModel, FiltersView, ReportViewModel,
)
from ledgermesh.utils.error_handling import AppException, ErrorCode, ExternalServiceException

logger = logging.getLogger(__name__)

CSV_FLUSH_EVERY = 200

REPORT_TITLES = {
    "tb": "Consolidated Trial Balance",
    "pl": "Consolidated Profit & Loss",
    "bs": "Consolidated Balance Sheet",
}

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"


def format_decimal(value) -> str:
    """Two decimal places, e.g. 1500 -> '1500.00'."""
    if value is None:
        value = Decimal("0")
    return f"{Decimal(value):.2f}"


def csv_filename(report: str, filters: FiltersView) -> str:
    return f"{report}-{filters.group_id}-{filters.period}.csv"


def pdf_filename(report: str, filters: FiltersView) -> str:
    return f"consol_{report}-{filters.group_id}-{filters.period}.pdf"


def warning_header(warnings: Sequence[str]) -> str:
    return "; ".join(w.strip() for w in warnings if w.strip())


# =============================================================================
# CSV
# =============================================================================

class CSVStreamer:
    """Buffered CSV writer handing out a chunk every `flush_every` rows."""
    
    def __init__(self, flush_every: int = CSV_FLUSH_EVERY):
        self.flush_every = flush_every
        self._buffer = io.StringIO()
        self._writer = csv.writer(self._buffer, lineterminator="\r\n")
        self.pending_rows = 0
    
    def write_comment(self, line: str) -> None:
        self._buffer.write(line.rstrip("\r\n") + "\r\n")
    
    def write_row(self, row: Sequence[str]) -> Optional[str]:
        """Write one row; returns a flushed chunk when the threshold is hit."""
        self._writer.writerow(row)
        self.pending_rows += 1
        if self.flush_every > 0 and self.pending_rows >= self.flush_every:
            return self.flush()
        return None
    
    def flush(self) -> str:
        chunk = self._buffer.getvalue()
        self._buffer.seek(0)
        self._buffer.truncate(0)
        self.pending_rows = 0
        return chunk


def _metadata(report: str, view: ReportViewModel) -> List[str]:
    filters = view.filters
    fx_state = "ON" if filters.fx_on else "OFF"
    lines = [
        f"# Report: {REPORT_TITLES[report]}",
        f"# Group: {filters.group_id} | Period: {filters.period} | FX: {fx_state} | Entities: {filters.entities_label}",
    ]
    joined = warning_header(view.warnings)
    lines.append(f"# Warnings: {joined}" if joined else "# Warnings: none")
    return lines


def _blank(width: int) -> List[str]:
    return [""] * width


def _tb_rows(view: ConsolTBViewModel) -> Iterator[List[str]]:
    yield ["Group Account", "Name", "Local Amount", "Group Amount"]
    for line in view.lines:
        yield [line.account_code, line.account_name,
               format_decimal(line.local_amount), format_decimal(line.group_amount)]
    yield _blank(4)
    yield ["Totals", "Local", "", format_decimal(view.totals.local)]
    yield ["Totals", "Group", "", format_decimal(view.totals.group)]
    yield ["Totals", "Balanced", "", "true" if view.totals.balanced else "false"]


def _pl_rows(view: ConsolPLViewModel) -> Iterator[List[str]]:
    yield ["Section", "Account Code", "Account Name", "Local Amount", "Group Amount"]
    for line in view.lines:
        yield [line.section, line.account_code, line.account_name,
               format_decimal(line.local_amount), format_decimal(line.group_amount)]
    yield _blank(5)
    totals = view.totals
    for label, amount in (
        ("Revenue", totals.revenue),
        ("COGS", totals.cogs),
        ("Gross Profit", totals.gross_profit),
        ("Opex", totals.opex),
        ("Net Income", totals.net_income),
        ("Delta FX", totals.delta_fx),
    ):
        yield ["Totals", "", label, "", format_decimal(amount)]


def _bs_rows(view: ConsolBSViewModel) -> Iterator[List[str]]:
    yield ["Section", "Account Code", "Account Name", "Local Amount", "Group Amount"]
    for line in view.assets:
        yield ["ASSET", line.account_code, line.account_name,
               format_decimal(line.local_amount), format_decimal(line.group_amount)]
    yield _blank(5)
    for line in view.liabilities_equity:
        yield [line.section, line.account_code, line.account_name,
               format_decimal(line.local_amount), format_decimal(line.group_amount)]
    yield _blank(5)
    totals = view.totals
    yield ["Totals", "", "Assets", "", format_decimal(totals.assets)]
    yield ["Totals", "", "Liabilities + Equity", "", format_decimal(totals.liabilities_equity)]
    yield ["Totals", "", "Balanced", "", "true" if totals.balanced else "false"]
    yield ["Totals", "", "Delta FX", "", format_decimal(totals.delta_fx)]


_ROW_WRITERS = {
    "tb": _tb_rows,
    "pl": _pl_rows,
    "bs": _bs_rows,
}


def iter_report_csv(
    report: str,
    view: ReportViewModel,
    flush_every: int = CSV_FLUSH_EVERY,
) -> Iterator[str]:
    """Yield the CSV export of a view model in flushed chunks."""
    streamer = CSVStreamer(flush_every=flush_every)
    for line in _metadata(report, view):
        streamer.write_comment(line)
    for row in _ROW_WRITERS[report](view):
        chunk = streamer.write_row(row)
        if chunk:
            yield chunk
    tail = streamer.flush()
    if tail:
        yield tail


def render_report_csv(report: str, view: ReportViewModel, flush_every: int = CSV_FLUSH_EVERY) -> str:
    return "".join(iter_report_csv(report, view, flush_every))


# =============================================================================
# PDF
# =============================================================================

class PDFExportError(ExternalServiceException):
    """PDF rendering failed."""
    
    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_ERROR,
        status_code: int = status.HTTP_502_BAD_GATEWAY,
        original_error: Optional[Exception] = None,
        attempts: Optional[int] = None,
    ):
        details = {"attempts": attempts} if attempts is not None else None
        super().__init__(
            service_name="pdf-renderer",
            message=message,
            code=code,
            status_code=status_code,
            original_error=original_error,
            details=details,
        )


class PDFTimeoutError(PDFExportError):
    def __init__(self, message: str = "consol pdf exporter: timeout", **kwargs):
        kwargs.setdefault("code", ErrorCode.PDF_RENDER_TIMEOUT)
        kwargs.setdefault("status_code", status.HTTP_504_GATEWAY_TIMEOUT)
        super().__init__(message, **kwargs)


class PDFInvalidResponseError(PDFExportError):
    def __init__(self, message: str = "consol pdf exporter: invalid response", **kwargs):
        kwargs.setdefault("code", ErrorCode.PDF_RENDER_INVALID_RESPONSE)
        super().__init__(message, **kwargs)


class PDFTooSmallError(PDFExportError):
    def __init__(self, message: str = "consol pdf exporter: pdf below minimum size", **kwargs):
        kwargs.setdefault("code", ErrorCode.PDF_RENDER_TOO_SMALL)
        super().__init__(message, **kwargs)


class PDFExportDisabledError(AppException):
    def __init__(self):
        super().__init__(
            code=ErrorCode.PDF_EXPORT_DISABLED,
            message="PDF export is not enabled",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )


class PDFRenderer(Protocol):
    enabled: bool
    
    async def render_html(self, html: str) -> bytes:
        ...


class NoopPDFRenderer:
    """Selected when PDF export is switched off."""
    
    enabled = False
    
    async def render_html(self, html: str) -> bytes:
        raise PDFExportDisabledError()


class HttpPDFRenderer:
    """
    Posts HTML to {endpoint}/forms/chromium/convert/html.
    
    Each attempt is bounded by `timeout`. 5xx responses, undersized PDFs,
    timeouts and transport errors are retried up to `max_retries` more
    times; any other non-2xx status fails immediately.
    """
    
    enabled = True
    CONVERT_PATH = "/forms/chromium/convert/html"
    
    def __init__(
        self,
        endpoint: str,
        timeout: float = 10.0,
        max_retries: int = 2,
        min_size: int = 1024,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        endpoint = (endpoint or "").strip()
        if not endpoint:
            raise ValueError("pdf renderer endpoint required")
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(max_retries, 0)
        self.min_size = min_size
        self._transport = transport
    
    @property
    def url(self) -> str:
        return self.endpoint + self.CONVERT_PATH
    
    async def _attempt(self, client: httpx.AsyncClient, html: str) -> bytes:
        try:
            response = await asyncio.wait_for(
                client.post(
                    self.url,
                    files={"files": ("report.html", html.encode("utf-8"), "text/html")},
                ),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise PDFTimeoutError(original_error=e)
        except httpx.RequestError as e:
            raise PDFExportError(f"consol pdf exporter: {e}", original_error=e)
        
        if response.status_code >= 500:
            raise PDFInvalidResponseError(
                f"consol pdf exporter: invalid response: status {response.status_code}"
            )
        if not 200 <= response.status_code < 300:
            raise _FatalPDFError(PDFInvalidResponseError(
                f"consol pdf exporter: invalid response: status {response.status_code}"
            ))
        if len(response.content) < self.min_size:
            raise PDFTooSmallError()
        return response.content
    
    async def render_html(self, html: str) -> bytes:
        attempts = self.max_retries + 1
        last_error: Optional[PDFExportError] = None
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for attempt in range(1, attempts + 1):
                try:
                    return await self._attempt(client, html)
                except _FatalPDFError as fatal:
                    logger.error(f"PDF render rejected: {fatal.error.message}")
                    raise fatal.error
                except PDFExportError as e:
                    last_error = e
                    logger.warning(f"PDF render attempt {attempt}/{attempts} failed: {e.message}")
        
        message = f"render consol pdf failed after {attempts} attempts: {last_error.message}"
        logger.error(message)
        raise type(last_error)(
            message,
            code=last_error.code,
            status_code=last_error.status_code,
            original_error=last_error,
            attempts=attempts,
        )


class _FatalPDFError(Exception):
    """Carries a non-retryable PDF error out of the attempt loop."""
    
    def __init__(self, error: PDFExportError):
        super().__init__(error.message)
        self.error = error


def build_pdf_renderer(settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
    """Runtime capability check: HTTP renderer when configured, else no-op."""
    if not settings.pdf_renderer_configured:
        logger.info("PDF export disabled")
        return NoopPDFRenderer()
    return HttpPDFRenderer(
        endpoint=settings.pdf_renderer_url,
        timeout=settings.pdf_request_timeout_seconds,
        max_retries=settings.pdf_max_retries,
        min_size=settings.pdf_min_size_bytes,
        transport=transport,
    )


# =============================================================================
# HTML TEMPLATES
# =============================================================================

templates = Jinja2Templates(directory=str(TEMPLATES_DIR))
templates.env.filters["format_decimal"] = format_decimal


def render_report_html(report: str, view: ReportViewModel) -> str:
    template = templates.get_template(f"consolidation/{report}_pdf.html")
    return template.render(
        title=REPORT_TITLES[report],
        report=report,
        vm=view,
    )


async def export_report_pdf(renderer: PDFRenderer, report: str, view: ReportViewModel) -> bytes:
    if not renderer.enabled:
        raise PDFExportDisabledError()
    html = render_report_html(report, view)
    return await renderer.render_html(html)
