"""Invoice line item to policy payment mapping stored in invoice metadata."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Mapping

from loguru import logger

from policy_billing_api.services.billing.errors import MissingMetadataError

MAPPING_METADATA_KEY = "associatedRootPaymentIds"
POLICY_METADATA_KEY = "rootPolicyId"


@dataclass(frozen=True, slots=True)
class LineItemPayment:
    invoice_line_item_id: str
    root_payment_id: str


@dataclass(frozen=True, slots=True)
class InvoicePaymentMapping:
    """Ordered mapping entries, one per invoice line item."""

    entries: tuple[LineItemPayment, ...] = ()

    @classmethod
    def parse(cls, raw: str | None) -> "InvoicePaymentMapping":
        if not raw:
            return cls()
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise MissingMetadataError("Invoice payment mapping is not valid JSON") from exc
        if not isinstance(decoded, list):
            raise MissingMetadataError("Invoice payment mapping must be a list")
        entries = []
        for item in decoded:
            if not isinstance(item, dict) or not item.get("invoiceLineItemId") or not item.get("rootPaymentId"):
                raise MissingMetadataError("Invoice payment mapping entry is malformed", entry=item)
            entries.append(
                LineItemPayment(
                    invoice_line_item_id=str(item["invoiceLineItemId"]),
                    root_payment_id=str(item["rootPaymentId"]),
                )
            )
        return cls(tuple(entries))

    @classmethod
    def from_invoice(cls, invoice: Mapping[str, Any]) -> "InvoicePaymentMapping":
        metadata = invoice.get("metadata") or {}
        return cls.parse(metadata.get(MAPPING_METADATA_KEY))

    def serialize(self) -> str:
        return json.dumps(
            [
                {"invoiceLineItemId": entry.invoice_line_item_id, "rootPaymentId": entry.root_payment_id}
                for entry in self.entries
            ]
        )

    def append(self, invoice_line_item_id: str, root_payment_id: str) -> "InvoicePaymentMapping":
        return InvoicePaymentMapping(self.entries + (LineItemPayment(invoice_line_item_id, root_payment_id),))

    def payment_for(self, invoice_line_item_id: str) -> str | None:
        for entry in self.entries:
            if entry.invoice_line_item_id == invoice_line_item_id:
                return entry.root_payment_id
        return None

    def resolve(self, line_items: Iterable[Mapping[str, Any]], *, invoice_id: str | None = None) -> list[str]:
        """Payment ids for every line item, failing before any caller side effects if one is unmapped."""

        payment_ids: list[str] = []
        for item in line_items:
            payment_id = self.payment_for(str(item.get("id")))
            if payment_id is None:
                raise MissingMetadataError(
                    "Invoice line item has no associated policy payment",
                    invoice_id=invoice_id,
                    invoice_line_item_id=item.get("id"),
                )
            payment_ids.append(payment_id)
        return payment_ids

    def __len__(self) -> int:
        return len(self.entries)


def mapping_metadata(mapping: InvoicePaymentMapping, policy_id: str) -> dict[str, str]:
    return {MAPPING_METADATA_KEY: mapping.serialize(), POLICY_METADATA_KEY: policy_id}


def invoice_line_items(invoice: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    lines = invoice.get("lines") or {}
    return list(lines.get("data") or [])


@dataclass(frozen=True, slots=True)
class MetadataRetryPolicy:
    """Bounded retry for invoice metadata that the processor writes asynchronously."""

    max_attempts: int = 2
    delay_seconds: float = 10.0


async def retrieve_invoice_with_mapping(
    fetch_invoice: Callable[[str], Awaitable[Mapping[str, Any]]],
    invoice_id: str,
    *,
    policy: MetadataRetryPolicy,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> tuple[Mapping[str, Any], InvoicePaymentMapping]:
    """Fetch the invoice until its payment mapping is present, or fail after ``policy.max_attempts``."""

    attempts = max(policy.max_attempts, 1)
    for attempt in range(1, attempts + 1):
        invoice = await fetch_invoice(invoice_id)
        mapping = InvoicePaymentMapping.from_invoice(invoice)
        if len(mapping):
            return invoice, mapping
        if attempt < attempts:
            logger.info(
                "Invoice payment mapping not yet written, retrying",
                invoice_id=invoice_id,
                attempt=attempt,
                delay_seconds=policy.delay_seconds,
            )
            await sleep(policy.delay_seconds)

    raise MissingMetadataError(
        "Invoice has no associated policy payments",
        invoice_id=invoice_id,
        attempts=attempts,
    )


__all__ = [
    "InvoicePaymentMapping",
    "LineItemPayment",
    "MAPPING_METADATA_KEY",
    "MetadataRetryPolicy",
    "POLICY_METADATA_KEY",
    "invoice_line_items",
    "mapping_metadata",
    "retrieve_invoice_with_mapping",
]
