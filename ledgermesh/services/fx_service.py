"""
LedgerMesh - Foreign Exchange (FX) Service

Currency translation for consolidated statements:
- Immutable translation policy (average rate for P&L, closing rate for BS)
- Stateless conversion of currency-bucketed amounts into the reporting currency
- Unresolved pair reporting via MissingRateError (never a partial conversion)
- Period coverage validation for required FX quotes
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum as PyEnum
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

from ledgermesh.utils.error_handling import ValidationException, ErrorCode

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class FXMethod(str, PyEnum):
    """Rate method applied to a statement."""
    AVERAGE = "AVERAGE"  # flow statements (P&L)
    CLOSING = "CLOSING"  # point-in-time statements (BS)


def normalize_currency(code: Optional[str]) -> str:
    """Upper-case, trimmed ISO 4217 code ('' when missing)."""
    return (code or "").strip().upper()


def currency_pair(base: str, quote: str) -> str:
    """Pair key as stored in fx_rates, e.g. IDR + USD -> IDRUSD."""
    return normalize_currency(base) + normalize_currency(quote)


def first_of_month(value: date) -> date:
    """FX quotes are keyed by month; every as-of date collapses to day 1."""
    return date(value.year, value.month, 1)


@dataclass(frozen=True)
class FXQuote:
    """Average and closing rate for one pair in one month."""
    pair: str
    average: Decimal
    closing: Decimal
    as_of: Optional[date] = None
    
    def rate_for(self, method: FXMethod) -> Decimal:
        if method == FXMethod.AVERAGE:
            return self.average
        return self.closing
    
    def has_rate(self, method: FXMethod) -> bool:
        """Zero or negative rates count as absent."""
        rate = self.rate_for(method)
        return rate is not None and rate > ZERO


@dataclass(frozen=True)
class FXPolicy:
    """Translation policy, constructed once per report build."""
    reporting_currency: str
    profit_loss_method: FXMethod = FXMethod.AVERAGE
    balance_sheet_method: FXMethod = FXMethod.CLOSING


def default_policy(reporting_currency: str) -> FXPolicy:
    return FXPolicy(reporting_currency=normalize_currency(reporting_currency))


@dataclass(frozen=True)
class FXLine:
    """Amount of one currency bucket of a consolidated account row."""
    account_code: str
    local_currency: str
    local_amount: Decimal
    group_amount: Decimal


class MissingRateError(Exception):
    """Raised when one or more required pairs have no usable quote."""
    
    def __init__(self, pairs: Sequence[str], method: Optional[FXMethod] = None):
        self.pairs = list(pairs)
        self.method = method
        super().__init__(f"FX rate missing for {', '.join(self.pairs)}")


class FXConverter:
    """
    Converts currency buckets into the group's reporting currency.
    
    Buckets already in the reporting currency pass through at parity.
    All other buckets are multiplied by the rate selected by the policy
    for the statement being built. If any bucket lacks a usable quote,
    nothing is converted and MissingRateError lists every unresolved pair.
    
    Conversion returns the converted lines and the FX delta, i.e. the
    converted group total minus the naive (unconverted) group total.
    A positive delta means translation raised the group total.
    """
    
    def __init__(self, policy: FXPolicy, quotes: Mapping[str, FXQuote]):
        self.policy = FXPolicy(
            reporting_currency=normalize_currency(policy.reporting_currency),
            profit_loss_method=policy.profit_loss_method,
            balance_sheet_method=policy.balance_sheet_method,
        )
        self._quotes: Dict[str, FXQuote] = {
            normalize_currency(pair): quote for pair, quote in quotes.items()
        }
    
    def convert_profit_loss(self, lines: Iterable[FXLine]) -> Tuple[List[FXLine], Decimal]:
        return self._convert(list(lines), self.policy.profit_loss_method)
    
    def convert_balance_sheet(self, lines: Iterable[FXLine]) -> Tuple[List[FXLine], Decimal]:
        return self._convert(list(lines), self.policy.balance_sheet_method)
    
    def _resolve_currency(self, line: FXLine) -> str:
        return normalize_currency(line.local_currency) or self.policy.reporting_currency
    
    def _convert(self, lines: List[FXLine], method: FXMethod) -> Tuple[List[FXLine], Decimal]:
        reporting = self.policy.reporting_currency
        
        missing: List[str] = []
        for line in lines:
            currency = self._resolve_currency(line)
            if currency == reporting:
                continue
            pair = currency_pair(currency, reporting)
            quote = self._quotes.get(pair)
            if (quote is None or not quote.has_rate(method)) and pair not in missing:
                missing.append(pair)
        if missing:
            raise MissingRateError(missing, method)
        
        converted: List[FXLine] = []
        naive_total = ZERO
        converted_total = ZERO
        for line in lines:
            currency = self._resolve_currency(line)
            if currency == reporting:
                amount = line.local_amount
            else:
                rate = self._quotes[currency_pair(currency, reporting)].rate_for(method)
                amount = line.local_amount * rate
            naive_total += line.group_amount
            converted_total += amount
            converted.append(FXLine(
                account_code=line.account_code,
                local_currency=currency,
                local_amount=line.local_amount,
                group_amount=amount,
            ))
        
        return converted, converted_total - naive_total


# =============================================================================
# FX COVERAGE VALIDATION
# =============================================================================

class FXConfigurationError(ValidationException):
    """Invalid coverage request (bad pair, method or period)."""
    
    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message=message, field=field, code=ErrorCode.INVALID_INPUT)


class QuoteProvider(Protocol):
    async def quote_for_period(self, as_of: date, pair: str) -> Optional[FXQuote]:
        ...


@dataclass
class FXRequirement:
    pair: str
    methods: List[FXMethod]


@dataclass
class FXGap:
    pair: str
    methods: List[FXMethod]


@dataclass
class FXValidationResult:
    period: date
    checked: int = 0
    gaps: List[FXGap] = field(default_factory=list)
    available: Dict[str, FXQuote] = field(default_factory=dict)
    
    @property
    def ok(self) -> bool:
        return not self.gaps


def _sorted_methods(methods: Iterable[FXMethod]) -> List[FXMethod]:
    return sorted(set(methods), key=lambda m: m.value)


async def validate_fx_coverage(
    provider: Optional[QuoteProvider],
    as_of: Optional[date],
    requirements: Sequence[FXRequirement],
) -> FXValidationResult:
    """
    Check that every required pair has a usable rate for each requested
    method in the month of `as_of`.
    
    Provider errors propagate unchanged.
    """
    if provider is None:
        raise FXConfigurationError("fx: quote provider required")
    if as_of is None:
        raise FXConfigurationError("fx: period is required", field="period")
    
    result = FXValidationResult(period=first_of_month(as_of))
    if not requirements:
        return result
    
    pairs: Dict[str, set] = {}
    for req in requirements:
        pair = normalize_currency(req.pair)
        if not pair:
            raise FXConfigurationError("fx: pair required", field="pair")
        if not req.methods:
            raise FXConfigurationError(f"fx: methods required for pair {pair}", field="methods")
        method_set = pairs.setdefault(pair, set())
        for method in req.methods:
            try:
                method_set.add(FXMethod(method))
            except ValueError:
                raise FXConfigurationError(
                    f"fx: unsupported method {method!r} for pair {pair}", field="methods"
                )
    
    for pair in sorted(pairs):
        quote = await provider.quote_for_period(result.period, pair)
        result.checked += 1
        if quote is None:
            result.gaps.append(FXGap(pair=pair, methods=_sorted_methods(pairs[pair])))
            continue
        result.available[pair] = quote
        missing = [method for method in pairs[pair] if not quote.has_rate(method)]
        if missing:
            result.gaps.append(FXGap(pair=pair, methods=_sorted_methods(missing)))
    
    if result.gaps:
        logger.warning(
            f"FX coverage incomplete for {result.period.isoformat()}: "
            f"{', '.join(gap.pair for gap in result.gaps)}"
        )
    return result
