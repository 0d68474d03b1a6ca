"""
Shipment document generation.

Requests the manifest, label and invoice for a dispatched order
concurrently and reports each one independently. One unavailable document
never hides the others: the result is a partial-success envelope where each
field holds either a URL or an error message.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Optional

from orderflow.core.errors import GatewayError, NotYetShippedError, OrderflowError
from orderflow.core.logging import get_logger
from orderflow.database.models.order import Order
from orderflow.services.shipping.client import DocumentKind, ShippingClient

logger = get_logger(__name__)


@dataclass(frozen=True)
class DocumentResult:
    url: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.url is not None


@dataclass(frozen=True)
class DocumentEnvelope:
    """Per-document outcome of a generation request."""

    manifest: DocumentResult
    label: DocumentResult
    invoice: DocumentResult

    def to_response(self) -> dict[str, Any]:
        """
        Render as ``{manifestUrl|manifestError, labelUrl|labelError,
        invoiceUrl|invoiceError}``.
        """
        body: dict[str, Any] = {}
        for name, result in (
            ("manifest", self.manifest),
            ("label", self.label),
            ("invoice", self.invoice),
        ):
            if result.ok:
                body[f"{name}Url"] = result.url
            else:
                body[f"{name}Error"] = result.error
        return body


def _describe(error: BaseException) -> str:
    if isinstance(error, GatewayError) and error.provider_description:
        return f"{error.message}: {error.provider_description}"
    if isinstance(error, OrderflowError):
        return error.message
    return f"{type(error).__name__}: {error}" if str(error) else type(error).__name__


class DocumentGenerator:
    """Fans out the three document requests and joins them without short-circuit."""

    def __init__(self, shipping_client: ShippingClient):
        self.shipping_client = shipping_client

    async def generate(self, order: Order) -> DocumentEnvelope:
        """
        Generate manifest, label and invoice for an order.

        Args:
            order: Order with recorded carrier identifiers

        Returns:
            DocumentEnvelope

        Raises:
            NotYetShippedError: If the carrier order or shipment id is missing;
                no provider call is made in that case
        """
        if not order.shipping_shipment_id or not order.shipping_order_id:
            raise NotYetShippedError(
                "Shipment has not been created for this order yet",
                order_id=str(order.id),
            )

        requests = (
            (DocumentKind.MANIFEST, [order.shipping_order_id]),
            (DocumentKind.LABEL, [order.shipping_shipment_id]),
            (DocumentKind.INVOICE, [order.shipping_order_id]),
        )

        outcomes = await asyncio.gather(
            *(
                self.shipping_client.create_shipment_documents(kind, reference_ids)
                for kind, reference_ids in requests
            ),
            return_exceptions=True,
        )

        results: dict[DocumentKind, DocumentResult] = {}
        for (kind, _), outcome in zip(requests, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.warning(
                    "Shipment document generation failed",
                    order_id=str(order.id),
                    document=kind.value,
                    error=_describe(outcome),
                    error_type=type(outcome).__name__,
                )
                results[kind] = DocumentResult(error=_describe(outcome))
            else:
                results[kind] = DocumentResult(url=outcome)

        logger.info(
            "Shipment documents generated",
            order_id=str(order.id),
            succeeded=[kind.value for kind, result in results.items() if result.ok],
        )

        return DocumentEnvelope(
            manifest=results[DocumentKind.MANIFEST],
            label=results[DocumentKind.LABEL],
            invoice=results[DocumentKind.INVOICE],
        )
