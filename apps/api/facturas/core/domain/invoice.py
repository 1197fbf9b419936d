import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional


def material_code_for(name: str, code: Optional[str] = None) -> str:
    """Material code from the invoice, or a slug of the name when it has none."""
    if code and code.strip():
        return code.strip()
    return re.sub(r"\s+", "-", name.strip().lower())[:50]


def _text(value: Any) -> Optional[str]:
    """Models often return codes and work orders as numbers; keep them as text."""
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    return None


class DuplicateInvoiceError(Exception):
    """Raised when an invoice with the same code already exists for the provider."""

    def __init__(self, invoice_code: str, provider_id: str) -> None:
        super().__init__(f"La factura {invoice_code} ya existe para el proveedor {provider_id}.")
        self.invoice_code = invoice_code
        self.provider_id = provider_id


@dataclass
class ExtractedProvider:
    name: str
    cif: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


@dataclass
class ExtractedLineItem:
    material_name: Optional[str]
    quantity: Any
    unit_price: Any
    total_price: Any
    material_code: Optional[str] = None
    material_description: Optional[str] = None
    list_price: Any = None
    discount_percentage: Any = None
    discount_raw: Optional[str] = None
    work_order: Optional[str] = None
    item_date: Optional[str] = None


@dataclass
class ExtractedInvoice:
    """Invoice exactly as the extraction service described it (camelCase payload)."""

    invoice_code: str
    provider: ExtractedProvider
    issue_date: str
    total_amount: Any
    items: List[ExtractedLineItem] = field(default_factory=list)
    iva_percentage: Any = None
    retention_amount: Any = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ExtractedInvoice":
        provider = payload.get("provider")
        if not isinstance(provider, dict):
            provider = {}
        items = []
        for raw in payload.get("items") or []:
            if not isinstance(raw, dict):
                continue
            items.append(
                ExtractedLineItem(
                    material_name=_text(raw.get("materialName")),
                    material_code=_text(raw.get("materialCode")),
                    material_description=_text(raw.get("materialDescription")),
                    quantity=raw.get("quantity"),
                    unit_price=raw.get("unitPrice"),
                    total_price=raw.get("totalPrice"),
                    list_price=raw.get("listPrice"),
                    discount_percentage=raw.get("discountPercentage"),
                    discount_raw=_text(raw.get("discountRaw")),
                    work_order=_text(raw.get("workOrder")),
                    item_date=_text(raw.get("itemDate")),
                )
            )
        return cls(
            invoice_code=_text(payload.get("invoiceCode")),
            provider=ExtractedProvider(
                name=_text(provider.get("name")),
                cif=_text(provider.get("cif")),
                email=_text(provider.get("email")),
                phone=_text(provider.get("phone")),
                address=_text(provider.get("address")),
            ),
            issue_date=_text(payload.get("issueDate")),
            total_amount=payload.get("totalAmount"),
            items=items,
            iva_percentage=payload.get("ivaPercentage"),
            retention_amount=payload.get("retentionAmount"),
        )


@dataclass
class Provider:
    id: str
    cif: str
    name: str
    is_blocked: bool = False


@dataclass
class Material:
    id: str
    code: str
    name: str


@dataclass
class MappedLineItem:
    material_name: str
    material_code: str
    quantity: Decimal
    unit_price: Decimal
    total_price: Decimal
    item_date: date
    material_description: Optional[str] = None
    list_price: Optional[Decimal] = None
    discount_percentage: Optional[Decimal] = None
    discount_raw: Optional[str] = None
    work_order: Optional[str] = None


@dataclass
class MappedInvoice:
    invoice_code: str
    provider: Provider
    issue_date: date
    total_amount: Decimal
    iva_percentage: Decimal
    retention_amount: Decimal
    items: List[MappedLineItem]
    has_totals_mismatch: bool = False


@dataclass
class PersistedInvoice:
    id: str
    invoice_code: str
    provider_id: str
    alerts_created: int = 0
