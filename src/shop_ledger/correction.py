"""Audit-preserving corrections of recorded sessions."""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Mapping

from . import data_manager, log
from .constants import TransactionStatus
from .errors import ConflictError, ValidationError
from .ledger import INPUT_FIELDS, TransactionLedger, input_of


class CorrectionEngine:
    """Replace an ``ACTIVE`` transaction with a corrected successor.

    This is the only way to change what a transaction says. The original row
    stays in the ledger as ``SUPERSEDED``; the successor is a fresh row, priced
    again from the current catalog, whose ``corrected_from_id`` points back at
    it. A successor may itself be corrected later, so chains can grow to any
    depth while keeping exactly one ``ACTIVE`` member.
    """

    def __init__(self, ledger: TransactionLedger):
        self.ledger = ledger

    def correct(self, original_id: str, updated_fields: Mapping[str, Any]) -> data_manager.TransactionRow:
        """Supersede ``original_id`` and append the merged replacement.

        Args:
            original_id (str): Id of the transaction being corrected.
            updated_fields (Mapping[str, Any]): Input fields to change. Fields
                left out are carried over from the original unchanged.

        Returns:
            data_manager.TransactionRow: The new ``ACTIVE`` transaction.

        Raises:
            NotFoundError: If ``original_id`` is unknown.
            ConflictError: If the original is no longer ``ACTIVE``.
            ValidationError: If ``updated_fields`` names a field that is not
                a transaction input, or the merged input is invalid.
            PricingNotFoundError: If the merged input has no pricing rule.
        """
        unknown = sorted(set(updated_fields) - set(INPUT_FIELDS))
        if unknown:
            log.error("Correction of '%s' names unknown fields: %s", original_id, ", ".join(unknown))
            raise ValidationError(f"Unknown transaction fields: {', '.join(unknown)}")

        with self.ledger.atomic():
            original = self.ledger.get_by_id(original_id)
            if original.status != TransactionStatus.ACTIVE:
                log.error(
                    "Cannot correct transaction '%s': status is %s",
                    original_id,
                    original.status.value,
                )
                raise ConflictError(
                    f"Transaction '{original_id}' is {original.status.value}, not ACTIVE"
                )

            merged = replace(input_of(original), **dict(updated_fields))
            self.ledger.mark_superseded(original_id)
            replacement = self.ledger.append(merged, corrected_from_id=original_id)

        log.info(
            "Corrected transaction '%s' with '%s' (fee %s -> %s)",
            original_id,
            replacement.transaction_id,
            original.staff_fee,
            replacement.staff_fee,
        )
        return replacement
