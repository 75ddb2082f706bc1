"""
LedgerMesh - Command Line Tools

fx-validate: check that every FX quote a group needs for a period exists.

Exit codes: 0 all rates present, 1 usage or runtime error, 10 gaps found.
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, TextIO

from ledgermesh.services.consolidation_service import parse_period
from ledgermesh.services.fx_service import (
    FXMethod, FXRequirement, FXValidationResult, currency_pair, normalize_currency,
    validate_fx_coverage,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_GAPS = 10

ALL_METHODS = [FXMethod.AVERAGE, FXMethod.CLOSING]


@dataclass
class FXValidateReport:
    group_id: int
    reporting_currency: str
    result: FXValidationResult
    considered_pairs: List[str] = field(default_factory=list)
    requested_pairs: List[str] = field(default_factory=list)


async def collect_fx_validation(
    repository,
    group_id: int,
    period: str,
    pairs: Sequence[str] = (),
) -> FXValidateReport:
    """Validate requested pairs, or every pair the group's members need."""
    as_of = parse_period(period)
    reporting = await repository.group_reporting_currency(group_id)
    
    requested: List[str] = []
    for raw in pairs:
        pair = normalize_currency(raw)
        if pair and pair not in requested:
            requested.append(pair)
    if requested:
        considered = sorted(set(requested))
    else:
        currencies = await repository.member_currencies(group_id)
        considered = sorted({
            currency_pair(c, reporting) for c in currencies.values()
            if normalize_currency(c) and normalize_currency(c) != reporting
        })
    
    requirements = [FXRequirement(pair=p, methods=list(ALL_METHODS)) for p in considered]
    result = await validate_fx_coverage(repository, as_of, requirements)
    return FXValidateReport(
        group_id=group_id,
        reporting_currency=reporting,
        result=result,
        considered_pairs=considered,
        requested_pairs=requested,
    )


def _available_methods(quote) -> List[str]:
    return [m.value for m in ALL_METHODS if quote.has_rate(m)]


def build_validate_summary(report: FXValidateReport) -> dict:
    period = report.result.period.strftime("%Y-%m")
    gaps = sorted(
        ({"pair": gap.pair, "period": period, "method": m.value}
         for gap in report.result.gaps for m in gap.methods),
        key=lambda g: (g["pair"], g["period"], g["method"]),
    )
    available = sorted(
        ({"pair": pair, "period": period, "method": method}
         for pair, quote in report.result.available.items()
         for method in _available_methods(quote)),
        key=lambda a: (a["pair"], a["period"], a["method"]),
    )
    return {"ok": not gaps, "gaps": gaps, "available_quotes": available}


def render_validate_human(out: TextIO, report: FXValidateReport) -> None:
    period = report.result.period.strftime("%Y-%m")
    out.write(f"FX validation for group {report.group_id} ({report.reporting_currency}), period {period}\n")
    if not report.result.gaps:
        out.write("All required FX rates are present.\n")
    else:
        out.write(f"{len(report.result.gaps)} gap(s) detected:\n")
        for gap in report.result.gaps:
            out.write(f" - {gap.pair} missing {', '.join(m.value for m in gap.methods)}\n")
    if report.considered_pairs:
        out.write("Checked pairs:\n")
        for pair in report.considered_pairs:
            quote = report.result.available.get(pair)
            if quote is None:
                out.write(f" - {pair} (missing)\n")
            else:
                out.write(f" - {pair} ({', '.join(_available_methods(quote))})\n")
    if report.requested_pairs:
        out.write(f"Requested pairs: {', '.join(report.requested_pairs)}\n")


async def run_fx_validate(
    repository,
    group_id: int,
    period: str,
    pairs: Sequence[str] = (),
    json_output: bool = False,
    stdout: Optional[TextIO] = None,
    stderr: Optional[TextIO] = None,
) -> int:
    stdout = stdout or sys.stdout
    stderr = stderr or sys.stderr
    if group_id is None or group_id <= 0:
        stderr.write("fx validate: --group is required and must be positive\n")
        return EXIT_ERROR
    if parse_period(period) is None:
        stderr.write(f"fx validate: invalid period {period!r} (expected YYYY-MM)\n")
        return EXIT_ERROR
    
    try:
        report = await collect_fx_validation(repository, group_id, period, pairs)
    except Exception as e:
        logger.debug("fx validate failed", exc_info=True)
        stderr.write(f"fx validate: {e}\n")
        return EXIT_ERROR
    
    if json_output:
        stdout.write(json.dumps(build_validate_summary(report)) + "\n")
    else:
        render_validate_human(stdout, report)
    return EXIT_GAPS if report.result.gaps else EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fx-validate",
        description="Check FX quote coverage for a consolidation group and period.",
    )
    parser.add_argument("--group", type=int, required=True, help="Consolidation group id")
    parser.add_argument("--period", required=True, help="Period, YYYY-MM")
    parser.add_argument(
        "--pairs",
        default="",
        help="Comma separated pairs such as IDRUSD (default: derived from member currencies)",
    )
    parser.add_argument("--json", action="store_true", help="Emit a JSON summary")
    return parser


async def _main_async(args: argparse.Namespace) -> int:
    from ledgermesh.database import async_session_maker, close_db
    from ledgermesh.services.consolidation_repository import ConsolidationRepository
    
    pairs = [p for p in args.pairs.split(",") if p.strip()]
    try:
        async with async_session_maker() as session:
            return await run_fx_validate(
                ConsolidationRepository(session),
                group_id=args.group,
                period=args.period,
                pairs=pairs,
                json_output=args.json,
            )
    finally:
        await close_db()


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    return asyncio.run(_main_async(args))


if __name__ == "__main__":
    sys.exit(main())
