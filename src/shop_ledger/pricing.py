"""Price and staff-fee resolution for booked sessions."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Mapping, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log
from .errors import PricingNotFoundError, ValidationError


PricingKey = Tuple[str, str, int]


@dataclass(frozen=True)
class PriceQuote:
    """Price charged to the customer and fee owed to the staff member."""

    price: Decimal
    staff_fee: Decimal


class PricingCatalog:
    """Exact-match lookup of ``(location, service, duration)`` to a quote.

    The catalog is a read-only snapshot of the active pricing rules. Admin
    edits to the ``PricingRules`` sheet only take effect once a new catalog is
    built, and never touch prices already stored on transactions.
    """

    def __init__(self, quotes: Mapping[PricingKey, PriceQuote]):
        self._quotes = dict(quotes)

    @classmethod
    def from_rules(cls, rules: Iterable[data_manager.PricingRuleRow]) -> "PricingCatalog":
        """Build a catalog from pricing rows, ignoring inactive ones.

        Raises:
            ValidationError: If two active rules share the same key triple.
        """
        quotes: dict[PricingKey, PriceQuote] = {}
        for rule in rules:
            if not rule.is_active:
                continue
            key = (rule.location, rule.service_name, rule.duration_minutes)
            if key in quotes:
                log.error("Duplicate pricing rule for %s", key)
                raise ValidationError(
                    f"Duplicate pricing rule: {rule.service_name} "
                    f"({rule.duration_minutes} minutes, {rule.location})"
                )
            quotes[key] = PriceQuote(price=rule.price, staff_fee=rule.staff_fee)
        log.debug("Built pricing catalog with %d rules", len(quotes))
        return cls(quotes)

    @classmethod
    def from_workbook(cls, workbook: Workbook) -> "PricingCatalog":
        return cls.from_rules(data_manager.iter_pricing_rules(workbook))

    def __len__(self) -> int:
        return len(self._quotes)

    def resolve(self, location: str, service_name: str, duration_minutes: int) -> PriceQuote:
        """Return the quote for an exact key match.

        Raises:
            PricingNotFoundError: If no active rule matches all three keys.
        """
        try:
            return self._quotes[(location, service_name, duration_minutes)]
        except KeyError as exc:
            log.warning(
                "No pricing rule for service '%s' (%s minutes, %s)",
                service_name,
                duration_minutes,
                location,
            )
            raise PricingNotFoundError(
                f"Service not found: {service_name} ({duration_minutes} minutes, {location})"
            ) from exc
