"""Gains engine: lot matching and short/long-term aggregation.

CRITICAL: This module is pure computation over a snapshot of trades.
- No database access, no shared state between calls
- Decimal arithmetic for every money and quantity field
- Disposals always realize in chronological order, whatever the method

Matching example (FIFO):
    BUY  1.0 BTC @ $30,000 fee $5   (2024-01-01) -> lot A
    BUY  1.0 BTC @ $35,000 fee $0   (2024-02-01) -> lot B
    SELL 1.5 BTC @ $40,000 fee $3   (2024-06-01) ->
        lot A: 1.0 consumed, basis 30,005, proceeds 39,998
        lot B: 0.5 consumed, basis 17,500, proceeds 19,999
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, List, Optional, Sequence

from ..models import CostBasisMethod
from .errors import ComputationError, InsufficientLotsError
from .lot_ordering import ordering_for

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
SECONDS_PER_DAY = Decimal(86400)

OVERSELL_ERROR = "error"
OVERSELL_ZERO_BASIS = "zero_basis"
OVERSELL_POLICIES = (OVERSELL_ERROR, OVERSELL_ZERO_BASIS)


@dataclass(frozen=True)
class TradeRecord:
    """Snapshot of one ledger trade, detached from the database session."""
    id: str
    asset: str
    quantity: Decimal
    price_usd: Decimal
    fee_usd: Decimal
    executed_at: datetime

    @classmethod
    def from_trade(cls, trade) -> "TradeRecord":
        """Validate and copy a Trade row (or any object with the same fields).

        Raises:
            ComputationError: If a field is missing or not a valid amount
        """
        trade_id = str(getattr(trade, "id", None))
        executed_at = getattr(trade, "executed_at", None)
        if not isinstance(executed_at, datetime):
            raise ComputationError(f"Trade {trade_id} has no execution time")

        asset = getattr(trade, "asset", None)
        if not asset:
            raise ComputationError(f"Trade {trade_id} has no asset")

        price = _to_decimal(trade, "price_usd")
        fee = _to_decimal(trade, "fee_usd", default=ZERO)
        if price < 0 or fee < 0:
            raise ComputationError(f"Trade {trade_id} has a negative price or fee")

        return cls(
            id=trade_id,
            asset=str(asset),
            quantity=_to_decimal(trade, "quantity"),
            price_usd=price,
            fee_usd=fee,
            executed_at=executed_at,
        )


@dataclass(frozen=True)
class GainDetail:
    """Gain realized by one disposal against one lot."""
    trade_id: str
    lot_trade_id: Optional[str]   # None for the zero-basis remainder of an oversold disposal
    asset: str
    quantity: Decimal
    proceeds: Decimal
    cost_basis: Decimal
    gain: Decimal
    holding_days: int
    long_term: bool

    def to_dict(self):
        """Wire shape; amounts as decimal strings."""
        return {
            "tradeId": self.trade_id,
            "lotTradeId": self.lot_trade_id,
            "asset": self.asset,
            "quantity": format(self.quantity, "f"),
            "proceedsUsd": format(self.proceeds, "f"),
            "basisUsd": format(self.cost_basis, "f"),
            "gainUsd": format(self.gain, "f"),
            "holdingPeriodDays": self.holding_days,
            "longTerm": self.long_term,
        }


@dataclass(frozen=True)
class GainSummary:
    """Short/long-term totals. total_gain is always short + long exactly."""
    short_term_gain: Decimal = ZERO
    long_term_gain: Decimal = ZERO
    total_gain: Decimal = ZERO

    def to_dict(self):
        """Wire shape; amounts as decimal strings."""
        return {
            "shortTermGain": format(self.short_term_gain, "f"),
            "longTermGain": format(self.long_term_gain, "f"),
            "totalGain": format(self.total_gain, "f"),
        }

    @classmethod
    def from_dict(cls, data) -> "GainSummary":
        return cls(
            short_term_gain=Decimal(data["shortTermGain"]),
            long_term_gain=Decimal(data["longTermGain"]),
            total_gain=Decimal(data["totalGain"]),
        )


@dataclass
class GainsResult:
    """Output of one calculation."""
    summary: GainSummary
    details: List[GainDetail] = field(default_factory=list)


@dataclass
class _Lot:
    trade: TradeRecord
    remaining: Decimal


def _to_decimal(trade, attr: str, default=None) -> Decimal:
    value = getattr(trade, attr, None)
    if value is None:
        if default is not None:
            return default
        raise ComputationError(f"Trade {getattr(trade, 'id', None)} is missing {attr}")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ComputationError(f"Trade {getattr(trade, 'id', None)} has invalid {attr}: {value!r}")
    if not result.is_finite():
        raise ComputationError(f"Trade {getattr(trade, 'id', None)} has invalid {attr}: {value!r}")
    return result


def holding_period_days(acquired_at: datetime, disposed_at: datetime) -> int:
    """Elapsed time in whole days, rounded half up."""
    delta: timedelta = disposed_at - acquired_at
    seconds = Decimal(delta.days * 86400 + delta.seconds) + Decimal(delta.microseconds) / Decimal(1_000_000)
    return int((seconds / SECONDS_PER_DAY).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def summarize(details: Sequence[GainDetail]) -> GainSummary:
    """Fold gain details into a GainSummary."""
    short_term = ZERO
    long_term = ZERO
    for detail in details:
        if detail.long_term:
            long_term += detail.gain
        else:
            short_term += detail.gain

    return GainSummary(
        short_term_gain=short_term,
        long_term_gain=long_term,
        total_gain=short_term + long_term,
    )


class GainsEngine:
    """Matches disposals against acquisition lots under a cost basis method.

    A disposal only draws on lots of the same asset acquired at or before
    the disposal time.
    """

    def __init__(self, oversell_policy: str = OVERSELL_ERROR, long_term_days: int = 365):
        """Initialize gains engine.

        Args:
            oversell_policy: "error" to fail when a disposal exceeds its lots,
                "zero_basis" to realize the remainder with zero cost basis
            long_term_days: Holding period (whole days) that must be exceeded
                for a gain to be long-term
        """
        if oversell_policy not in OVERSELL_POLICIES:
            raise ValueError(f"Unknown oversell policy '{oversell_policy}'")
        self.oversell_policy = oversell_policy
        self.long_term_days = long_term_days

    def calculate(
        self,
        trades: Sequence,
        method: CostBasisMethod = CostBasisMethod.FIFO,
        lot_order: Optional[Sequence[str]] = None,
    ) -> GainsResult:
        """Match trades and summarize the realized gains.

        Raises:
            ConfigurationError: SPEC_ID without a usable lot order
            ComputationError: Malformed trades, or an oversold disposal
                under the "error" policy
        """
        details = self.match(trades, method, lot_order)
        return GainsResult(summary=summarize(details), details=details)

    def match(
        self,
        trades: Sequence,
        method: CostBasisMethod = CostBasisMethod.FIFO,
        lot_order: Optional[Sequence[str]] = None,
    ) -> List[GainDetail]:
        """Run the lot drawdown and return one GainDetail per lot consumed."""
        ordering = ordering_for(method, lot_order)
        records = [t if isinstance(t, TradeRecord) else TradeRecord.from_trade(t) for t in trades]

        acquisitions = [t for t in records if t.quantity > 0]
        disposals = sorted(
            (t for t in records if t.quantity < 0),
            key=lambda t: (t.executed_at, t.id),
        )

        # Arena of lots per asset in consumption order, plus a cursor past
        # the exhausted prefix.
        arenas: Dict[str, List[_Lot]] = {}
        for trade in ordering.order(acquisitions):
            arenas.setdefault(trade.asset, []).append(_Lot(trade=trade, remaining=trade.quantity))
        cursors: Dict[str, int] = {asset: 0 for asset in arenas}

        details: List[GainDetail] = []
        for sale in disposals:
            details.extend(self._match_disposal(sale, arenas.get(sale.asset, []), cursors))

        logger.debug(
            f"Matched {len(disposals)} disposal(s) against {len(acquisitions)} "
            f"acquisition(s) with {ordering!r}: {len(details)} detail(s)"
        )
        return details

    def _match_disposal(self, sale: TradeRecord, lots: List[_Lot], cursors: Dict[str, int]) -> List[GainDetail]:
        sale_qty = -sale.quantity
        need = sale_qty
        details = []

        index = cursors.get(sale.asset, 0)
        while need > 0 and index < len(lots):
            lot = lots[index]
            if lot.remaining <= 0 or lot.trade.executed_at > sale.executed_at:
                index += 1
                continue

            matched = min(need, lot.remaining)
            cost_basis = matched * lot.trade.price_usd + lot.trade.fee_usd * matched / lot.trade.quantity
            proceeds = matched * sale.price_usd - sale.fee_usd * matched / sale_qty
            holding_days = holding_period_days(lot.trade.executed_at, sale.executed_at)

            details.append(GainDetail(
                trade_id=sale.id,
                lot_trade_id=lot.trade.id,
                asset=sale.asset,
                quantity=matched,
                proceeds=proceeds,
                cost_basis=cost_basis,
                gain=proceeds - cost_basis,
                holding_days=holding_days,
                long_term=holding_days > self.long_term_days,
            ))

            lot.remaining -= matched
            need -= matched

        # Advance past lots that can never be drawn again
        cursor = cursors.get(sale.asset, 0)
        while cursor < len(lots) and lots[cursor].remaining <= 0:
            cursor += 1
        cursors[sale.asset] = cursor

        if need > 0:
            details.extend(self._handle_oversell(sale, sale_qty, need))

        return details

    def _handle_oversell(self, sale: TradeRecord, sale_qty: Decimal, unmatched: Decimal) -> List[GainDetail]:
        if self.oversell_policy == OVERSELL_ERROR:
            raise InsufficientLotsError(sale.id, sale.asset, unmatched)

        logger.warning(
            f"Insufficient lots for disposal {sale.id}: {unmatched} {sale.asset} "
            f"realized with zero cost basis"
        )
        proceeds = unmatched * sale.price_usd - sale.fee_usd * unmatched / sale_qty
        return [GainDetail(
            trade_id=sale.id,
            lot_trade_id=None,
            asset=sale.asset,
            quantity=unmatched,
            proceeds=proceeds,
            cost_basis=ZERO,
            gain=proceeds,
            holding_days=0,
            long_term=False,
        )]
