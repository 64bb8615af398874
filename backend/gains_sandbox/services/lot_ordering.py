"""Lot ordering strategies - which acquisition is consumed first.

Each strategy takes the acquisition trades (quantity > 0) and returns them in
consumption priority, front first:

    Chronological()                -> FIFO, oldest first
    Chronological(descending=True) -> LIFO, newest first
    ByUnitPrice()                  -> HIFO, highest unit price first
    Explicit(ordered_ids)          -> SPEC_ID, caller-chosen order

Ties are broken on trade id (and execution time for HIFO) so the order is
total and repeatable.
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from ..models import CostBasisMethod
from .errors import ConfigurationError, ValidationError


class LotOrdering(ABC):
    """Base class for lot ordering strategies."""

    @abstractmethod
    def order(self, acquisitions: Sequence) -> List:
        """Return acquisitions in consumption order."""


class Chronological(LotOrdering):
    """Order by execution time (ascending for FIFO, descending for LIFO)."""

    def __init__(self, descending: bool = False):
        self.descending = descending

    def order(self, acquisitions: Sequence) -> List:
        return sorted(
            acquisitions,
            key=lambda t: (t.executed_at, t.id),
            reverse=self.descending,
        )

    def __repr__(self):
        return f"Chronological(descending={self.descending})"


class ByUnitPrice(LotOrdering):
    """Highest unit price first; older trades first on equal price."""

    def order(self, acquisitions: Sequence) -> List:
        return sorted(
            acquisitions,
            key=lambda t: (-t.price_usd, t.executed_at, t.id),
        )

    def __repr__(self):
        return "ByUnitPrice()"


class Explicit(LotOrdering):
    """Caller-supplied order of acquisition trade ids.

    Only the listed acquisitions are eligible. Unknown or repeated ids are a
    configuration error.
    """

    def __init__(self, ordered_ids: Sequence[str]):
        if not ordered_ids:
            raise ConfigurationError("SPEC_ID requires an explicit lot order")

        ids = [str(i) for i in ordered_ids]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ConfigurationError(f"Lot order repeats trade ids: {', '.join(duplicates)}")

        self.ordered_ids = ids

    def order(self, acquisitions: Sequence) -> List:
        by_id = {str(t.id): t for t in acquisitions}

        unknown = [i for i in self.ordered_ids if i not in by_id]
        if unknown:
            raise ConfigurationError(
                f"Lot order names trades that are not acquisitions: {', '.join(unknown)}"
            )

        return [by_id[i] for i in self.ordered_ids]

    def __repr__(self):
        return f"Explicit({self.ordered_ids!r})"


def parse_method(value) -> CostBasisMethod:
    """Coerce a method name to CostBasisMethod.

    Raises:
        ValidationError: If the name is not a supported method
    """
    if isinstance(value, CostBasisMethod):
        return value
    try:
        return CostBasisMethod(str(value).upper())
    except ValueError:
        options = ", ".join(m.value for m in CostBasisMethod)
        raise ValidationError(f"Unknown cost basis method '{value}' (expected one of {options})")


def ordering_for(method: CostBasisMethod, lot_order: Optional[Sequence[str]] = None) -> LotOrdering:
    """Build the ordering strategy for a method.

    Raises:
        ConfigurationError: If SPEC_ID is requested without a lot order
    """
    method = parse_method(method)

    if method == CostBasisMethod.FIFO:
        return Chronological()
    if method == CostBasisMethod.LIFO:
        return Chronological(descending=True)
    if method == CostBasisMethod.HIFO:
        return ByUnitPrice()
    return Explicit(lot_order or [])
