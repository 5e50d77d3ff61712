"""Invoice and receipt document rendering.

Rendering is a pluggable capability: the billing code only hands over a
data dict and stores whatever bytes the renderer returns.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from config import settings
from services.storage import get_document_store


class DocumentRenderer(ABC):
    content_type: str = "application/octet-stream"
    extension: str = "bin"

    @abstractmethod
    def render_invoice(self, data: Dict[str, Any]) -> bytes:
        raise NotImplementedError

    @abstractmethod
    def render_receipt(self, data: Dict[str, Any]) -> bytes:
        raise NotImplementedError


class TextDocumentRenderer(DocumentRenderer):
    """Plain-text statements, used until a PDF renderer is configured."""

    content_type = "text/plain"
    extension = "txt"

    def render_invoice(self, data: Dict[str, Any]) -> bytes:
        currency = settings.CURRENCY_CODE
        lines: List[str] = [
            f"INVOICE {data['invoice_number']}",
            f"Client: {data['client_name']} ({data['client_code']})",
            f"Period: {data['period_start']} to {data['period_end']}",
            f"Due date: {data['due_date']}",
            "",
        ]
        for item in data.get("line_items", []):
            if item["line_type"] == "usage":
                lines.append(
                    f"  {item['product_id']} / {item['tier_name']}: "
                    f"{item['session_count']} x {item['credits_per_session']} credits = {item['total_credits']}"
                )
            else:
                lines.append(
                    f"  Previous balance {item['reference_invoice_number']}: {item['total_credits']} credits"
                )
        lines.extend(
            [
                "",
                f"Total usage: {data['total_usage_credits']} credits",
                f"Previous balance: {data['previous_balance_credits']} credits",
                f"Amount due: {data['amount_due_credits']} credits ({currency} {data['amount_due_currency']})",
                f"Tax ({data['tax_rate']}): {currency} {data['tax_amount']}",
                f"Total with tax: {currency} {data['total_with_tax']}",
            ]
        )
        return ("\n".join(lines) + "\n").encode("utf-8")

    def render_receipt(self, data: Dict[str, Any]) -> bytes:
        currency = settings.CURRENCY_CODE
        lines = [
            f"RECEIPT {data['receipt_number']}",
            f"Invoice: {data['invoice_number']}",
            f"Client: {data['client_name']} ({data['client_code']})",
            f"Payment date: {data['payment_date']}",
            f"Amount: {data['amount_credits']} credits ({currency} {data['amount_currency']})",
            f"Method: {data.get('payment_method') or '-'}",
            f"Reference: {data.get('payment_reference') or '-'}",
        ]
        return ("\n".join(lines) + "\n").encode("utf-8")


_renderer: Optional[DocumentRenderer] = None


def get_document_renderer() -> DocumentRenderer:
    global _renderer
    if _renderer is None:
        _renderer = TextDocumentRenderer()
    return _renderer


def set_document_renderer(renderer: Optional[DocumentRenderer]) -> None:
    global _renderer
    _renderer = renderer


def store_invoice_document(client_id: str, invoice_id: str, data: Dict[str, Any]) -> str:
    renderer = get_document_renderer()
    body = renderer.render_invoice(data)
    key = f"invoices/{client_id}/{invoice_id}.{renderer.extension}"
    return get_document_store().put_bytes(key, body, renderer.content_type)


def store_receipt_document(client_id: str, payment_id: str, data: Dict[str, Any]) -> str:
    renderer = get_document_renderer()
    body = renderer.render_receipt(data)
    key = f"receipts/{client_id}/{payment_id}.{renderer.extension}"
    return get_document_store().put_bytes(key, body, renderer.content_type)
