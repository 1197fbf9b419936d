import logging
import re
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Protocol

from facturas.core import config
from facturas.core.domain.batch import ErrorKind
from facturas.core.domain.invoice import (
    ExtractedInvoice,
    ExtractedLineItem,
    MappedInvoice,
    MappedLineItem,
    Provider,
    material_code_for,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


class MappingError(Exception):
    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message


class ProviderResolver(Protocol):
    def find_or_create_provider(self, cif: str, attrs: Dict[str, Any]) -> Provider: ...


def normalize_cif(cif: Optional[str]) -> str:
    return re.sub(r"[\s.\-]", "", cif or "").upper()


def to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip().replace(" ", "")
        if not value:
            return None
        if "," in value and "." not in value:
            value = value.replace(",", ".")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def parse_issue_date(value: Any) -> Optional[date]:
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        pass
    for fmt in ("%d/%m/%Y", "%d-%m-%Y"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def propagate_work_order(items: List[ExtractedLineItem]) -> None:
    """Give items without a work order the first work order found in the document."""
    first = next(
        (item.work_order.strip() for item in items if item.work_order and item.work_order.strip()),
        None,
    )
    if first is None:
        return
    for item in items:
        if not item.work_order or not item.work_order.strip():
            item.work_order = first


def effective_unit_price(
    unit_price: Optional[Decimal],
    list_price: Optional[Decimal],
    discount_percentage: Optional[Decimal],
    tolerance: Decimal = config.UNIT_PRICE_TOLERANCE,
) -> Optional[Decimal]:
    if list_price is None or discount_percentage is None:
        return unit_price
    computed = (list_price * (1 - discount_percentage / HUNDRED)).quantize(CENT, ROUND_HALF_UP)
    if unit_price is None:
        return computed
    if abs(computed - unit_price) <= tolerance:
        return computed
    logger.info(
        "Unit price %s disagrees with list price %s - %s%%; keeping extracted unit price",
        unit_price,
        list_price,
        discount_percentage,
    )
    return unit_price


def has_totals_mismatch(
    total_amount: Decimal,
    items_total: Decimal,
    iva_percentage: Decimal,
    retention_amount: Decimal,
    tolerance: Decimal = config.TOTALS_MISMATCH_TOLERANCE,
) -> bool:
    expected = items_total * (1 + iva_percentage / HUNDRED) - retention_amount
    return abs(total_amount - expected) > tolerance


class InvoiceMapper:
    """Validates an extracted invoice and turns it into records ready to persist."""

    def __init__(
        self,
        providers: ProviderResolver,
        *,
        totals_tolerance: Decimal = config.TOTALS_MISMATCH_TOLERANCE,
        default_iva_percentage: Decimal = config.DEFAULT_IVA_PERCENTAGE,
    ) -> None:
        self._providers = providers
        self._totals_tolerance = totals_tolerance
        self._default_iva = default_iva_percentage

    def map(self, extracted: ExtractedInvoice) -> MappedInvoice:
        invoice_code = (extracted.invoice_code or "").strip()
        if not invoice_code:
            raise MappingError(ErrorKind.PARSING_ERROR, "Falta el número de factura.")
        cif = normalize_cif(extracted.provider.cif)
        if not cif:
            raise MappingError(ErrorKind.PARSING_ERROR, "Falta el CIF del proveedor.")
        issue_date = parse_issue_date(extracted.issue_date)
        if issue_date is None:
            raise MappingError(
                ErrorKind.PARSING_ERROR, f"Fecha de emisión inválida: {extracted.issue_date!r}"
            )
        total_amount = to_decimal(extracted.total_amount)
        if total_amount is None:
            raise MappingError(ErrorKind.PARSING_ERROR, "Importe total inválido.")

        propagate_work_order(extracted.items)
        items = [
            mapped
            for mapped in (self._map_item(item, issue_date) for item in extracted.items)
            if mapped is not None
        ]
        if not items:
            raise MappingError(ErrorKind.PARSING_ERROR, "La factura no contiene líneas.")

        iva = to_decimal(extracted.iva_percentage)
        iva = self._default_iva if iva is None else iva
        retention = to_decimal(extracted.retention_amount) or Decimal("0")
        items_total = sum((item.total_price for item in items), Decimal("0"))
        mismatch = has_totals_mismatch(
            total_amount, items_total, iva, retention, self._totals_tolerance
        )
        if mismatch:
            logger.info(
                "Invoice %s: declared total %s does not match lines %s (IVA %s%%, retención %s)",
                invoice_code,
                total_amount,
                items_total,
                iva,
                retention,
            )

        provider = self._providers.find_or_create_provider(
            cif,
            {
                "name": (extracted.provider.name or cif).strip(),
                "email": extracted.provider.email,
                "phone": extracted.provider.phone,
                "address": extracted.provider.address,
            },
        )
        return MappedInvoice(
            invoice_code=invoice_code,
            provider=provider,
            issue_date=issue_date,
            total_amount=total_amount.quantize(CENT, ROUND_HALF_UP),
            iva_percentage=iva,
            retention_amount=retention,
            items=items,
            has_totals_mismatch=mismatch,
        )

    def _map_item(self, item: ExtractedLineItem, issue_date: date) -> Optional[MappedLineItem]:
        name = (item.material_name or "").strip()
        code = (item.material_code or "").strip() or None
        if not name and code:
            name = f"CODE: {code}"
        if not name:
            logger.warning("Skipping line without material name or code")
            return None

        quantity = to_decimal(item.quantity)
        list_price = to_decimal(item.list_price)
        discount = to_decimal(item.discount_percentage)
        unit_price = effective_unit_price(to_decimal(item.unit_price), list_price, discount)
        if quantity is None or unit_price is None:
            raise MappingError(
                ErrorKind.PARSING_ERROR,
                f"Línea '{name}' con cantidad o precio inválidos "
                f"(cantidad={item.quantity!r}, precio={item.unit_price!r}).",
            )
        total_price = to_decimal(item.total_price)
        if total_price is None:
            total_price = quantity * unit_price

        return MappedLineItem(
            material_name=name,
            material_code=material_code_for(name, code),
            material_description=item.material_description,
            quantity=quantity,
            unit_price=unit_price.quantize(CENT, ROUND_HALF_UP),
            total_price=total_price.quantize(CENT, ROUND_HALF_UP),
            list_price=list_price,
            discount_percentage=discount,
            discount_raw=item.discount_raw,
            work_order=item.work_order.strip() if item.work_order else None,
            item_date=parse_issue_date(item.item_date) or issue_date,
        )
