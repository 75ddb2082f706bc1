"""
LedgerMesh - Multi-Entity Consolidation Router

Consolidated Trial Balance, Profit & Loss and Balance Sheet reports with
CSV/PDF exports, plus balance rebuild and FX quote maintenance.
"""

import logging
from enum import Enum
from typing import Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, Query, Response, status
from fastapi.responses import StreamingResponse

from ledgermesh.dependencies import (
    get_consolidation_service, get_csv_flush_every, get_pdf_renderer, get_report_service,
)
from ledgermesh.schemas.consolidation import (
    ConsolBSViewModel, ConsolPLViewModel, ConsolTBViewModel,
    FxRateRequest, FxRateResponse, RebuildRequest, RefreshAllRequest,
)
from ledgermesh.services.consolidation_repository import FxRateInput
from ledgermesh.services.consolidation_service import (
    ConsolidationFilters, ConsolidationService, FilterValidationError, parse_period,
)
from ledgermesh.services.report_export_service import (
    PDFExportDisabledError, PDFRenderer, csv_filename, export_report_pdf,
    iter_report_csv, pdf_filename, warning_header,
)
from ledgermesh.services.report_view_service import ConsolidationReportService

logger = logging.getLogger(__name__)

WARNING_HEADER = "X-Consol-Warning"

router = APIRouter(
    prefix="/api/v1/consolidation",
    tags=["Consolidation"],
)


class ReportKind(str, Enum):
    TB = "tb"
    PL = "pl"
    BS = "bs"


# ============================================================================
# Query parsing
# ============================================================================

def _parse_entities(raw: Optional[str]) -> Tuple[Tuple[int, ...], Optional[str]]:
    value = (raw or "").strip()
    if not value or value.lower() == "all":
        return (), None
    seen: List[int] = []
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            entity_id = int(part)
        except ValueError:
            return (), f"invalid entity id {part!r}"
        if entity_id <= 0:
            return (), f"invalid entity id {part!r}"
        if entity_id not in seen:
            seen.append(entity_id)
    return tuple(seen), None


def parse_filters(
    group: Optional[str],
    period: Optional[str],
    entities: Optional[str],
    fx: Optional[str],
) -> ConsolidationFilters:
    """
    Build report filters from query parameters:
    group (int > 0), period (YYYY-MM), entities (comma list or "all"),
    fx ("on"/"off"/empty).
    """
    errors: Dict[str, str] = {}
    
    group_id = 0
    try:
        group_id = int((group or "").strip())
    except ValueError:
        errors["group"] = "group id is required"
    else:
        if group_id <= 0:
            errors["group"] = "group id is required"
    
    period = (period or "").strip()
    if not period:
        errors["period"] = "period is required"
    elif parse_period(period) is None:
        errors["period"] = "invalid period format, expected YYYY-MM"
    
    entity_ids, entity_error = _parse_entities(entities)
    if entity_error:
        errors["entities"] = entity_error
    
    fx_value = (fx or "").strip().lower()
    if fx_value not in ("", "on", "off"):
        errors["fx"] = "fx must be on or off"
    
    filters = ConsolidationFilters(
        group_id=group_id,
        period=period,
        entities=entity_ids,
        fx_on=fx_value == "on",
    )
    if errors:
        raise _FilterErrors(filters, errors)
    return filters


class _FilterErrors(FilterValidationError):
    """Validation error that keeps the partially parsed filters."""
    
    def __init__(self, filters: ConsolidationFilters, errors: Dict[str, str]):
        super().__init__(errors)
        self.filters = filters


def _warning_headers(warnings: List[str]) -> Dict[str, str]:
    joined = warning_header(warnings)
    return {WARNING_HEADER: joined} if joined else {}


def _for_export(error: FilterValidationError) -> FilterValidationError:
    """Exports have no page to show inline errors on, so they fail with 400."""
    return FilterValidationError(error.errors, status_code=status.HTTP_400_BAD_REQUEST)


# ============================================================================
# Report endpoints
# ============================================================================

@router.get("/{report}", response_model=None)
async def get_consolidated_report(
    report: ReportKind,
    response: Response,
    group: Optional[str] = Query(None, description="Consolidation group id"),
    period: Optional[str] = Query(None, description="Period, YYYY-MM"),
    entities: Optional[str] = Query(None, description="Comma separated company ids or 'all'"),
    fx: Optional[str] = Query(None, description="on / off"),
    service: ConsolidationReportService = Depends(get_report_service),
):
    """
    Consolidated report view model.
    
    Invalid filters do not fail the request: the view model comes back with
    its `errors` map filled so the page can show them inline.
    """
    try:
        filters = parse_filters(group, period, entities, fx)
    except _FilterErrors as e:
        return ConsolidationReportService.error_view(report.value, e.filters, e)
    
    try:
        view = await service.view(report.value, filters)
    except FilterValidationError as e:
        return ConsolidationReportService.error_view(report.value, filters, e)
    
    response.headers.update(_warning_headers(view.warnings))
    return view


@router.get("/{report}/export.csv")
async def export_consolidated_csv(
    report: ReportKind,
    group: Optional[str] = Query(None),
    period: Optional[str] = Query(None),
    entities: Optional[str] = Query(None),
    fx: Optional[str] = Query(None),
    service: ConsolidationReportService = Depends(get_report_service),
    flush_every: int = Depends(get_csv_flush_every),
):
    """Stream the report as CSV; the report is built before streaming starts."""
    try:
        filters = parse_filters(group, period, entities, fx)
        view = await service.view(report.value, filters)
    except FilterValidationError as e:
        raise _for_export(e) from e
    
    headers = {
        "Content-Disposition": f"attachment; filename={csv_filename(report.value, view.filters)}",
    }
    headers.update(_warning_headers(view.warnings))
    return StreamingResponse(
        iter_report_csv(report.value, view, flush_every=flush_every),
        media_type="text/csv",
        headers=headers,
    )


@router.get("/{report}/pdf")
async def export_consolidated_pdf(
    report: ReportKind,
    group: Optional[str] = Query(None),
    period: Optional[str] = Query(None),
    entities: Optional[str] = Query(None),
    fx: Optional[str] = Query(None),
    service: ConsolidationReportService = Depends(get_report_service),
    renderer: PDFRenderer = Depends(get_pdf_renderer),
):
    if not renderer.enabled:
        raise PDFExportDisabledError()
    try:
        filters = parse_filters(group, period, entities, fx)
        view = await service.view(report.value, filters)
    except FilterValidationError as e:
        raise _for_export(e) from e
    
    content = await export_report_pdf(renderer, report.value, view)
    headers = {
        "Content-Disposition": f"attachment; filename={pdf_filename(report.value, view.filters)}",
    }
    headers.update(_warning_headers(view.warnings))
    return Response(content=content, media_type="application/pdf", headers=headers)


# ============================================================================
# Maintenance endpoints
# ============================================================================

@router.post("/rebuild")
async def rebuild_consolidation(
    request: RebuildRequest,
    service: ConsolidationService = Depends(get_consolidation_service),
):
    """Rebuild materialised balances for one group and period."""
    await service.rebuild_consolidation(request.group_id, request.period)
    return {"status": "ok", "group_id": request.group_id, "period": request.period}


@router.post("/refresh")
async def refresh_all_groups(
    request: RefreshAllRequest,
    service: ConsolidationService = Depends(get_consolidation_service),
):
    """Rebuild every group for a period (default: the active consolidation period)."""
    return await service.refresh_all(request.period)


@router.post("/fx-rates", response_model=FxRateResponse)
async def upsert_fx_rate(
    request: FxRateRequest,
    service: ConsolidationService = Depends(get_consolidation_service),
):
    stored = await service.upsert_fx_rate(FxRateInput(
        as_of=request.as_of,
        pair=request.pair,
        average_rate=request.average_rate,
        closing_rate=request.closing_rate,
    ))
    return FxRateResponse(
        as_of=stored.as_of,
        pair=stored.pair,
        average_rate=stored.average_rate,
        closing_rate=stored.closing_rate,
    )
