from decimal import Decimal

import pytest

from facturas.application.invoice_mapper import (
    InvoiceMapper,
    MappingError,
    effective_unit_price,
    has_totals_mismatch,
    normalize_cif,
)
from facturas.core.domain.batch import ErrorKind
from facturas.core.domain.invoice import ExtractedInvoice, material_code_for


def _map(store, payload):
    return InvoiceMapper(store).map(ExtractedInvoice.from_payload(payload))


def test_work_order_is_propagated_to_items_without_one(invoice_store, invoice_payload):
    payload = invoice_payload(
        total=121.0,
        items=[
            {"materialName": "Item A", "quantity": 1, "unitPrice": 50, "totalPrice": 50, "workOrder": "OT-1"},
            {"materialName": "Item B", "quantity": 1, "unitPrice": 50, "totalPrice": 50, "workOrder": None},
        ],
    )

    mapped = _map(invoice_store, payload)

    assert [item.work_order for item in mapped.items] == ["OT-1", "OT-1"]


def test_first_work_order_wins_and_explicit_ones_are_kept(invoice_store, invoice_payload):
    payload = invoice_payload(
        items=[
            {"materialName": "A", "quantity": 1, "unitPrice": 1, "totalPrice": 1},
            {"materialName": "B", "quantity": 1, "unitPrice": 1, "totalPrice": 1, "workOrder": "OT-7"},
            {"materialName": "C", "quantity": 1, "unitPrice": 1, "totalPrice": 1, "workOrder": "OT-9"},
        ]
    )

    mapped = _map(invoice_store, payload)

    assert [item.work_order for item in mapped.items] == ["OT-7", "OT-7", "OT-9"]


@pytest.mark.parametrize("total,expected", [(121.0, False), (150.0, True)])
def test_totals_mismatch_flag(invoice_store, invoice_payload, total, expected):
    payload = invoice_payload(
        total=total,
        items=[
            {"materialName": "A", "quantity": 2, "unitPrice": 30, "totalPrice": 60},
            {"materialName": "B", "quantity": 4, "unitPrice": 10, "totalPrice": 40},
        ],
    )

    mapped = _map(invoice_store, payload)

    assert mapped.has_totals_mismatch is expected


def test_totals_mismatch_accounts_for_retention_and_default_iva():
    assert not has_totals_mismatch(Decimal("106"), Decimal("100"), Decimal("21"), Decimal("15"))
    assert has_totals_mismatch(Decimal("100.60"), Decimal("100"), Decimal("0"), Decimal("0"))
    assert not has_totals_mismatch(Decimal("100.50"), Decimal("100"), Decimal("0"), Decimal("0"))


def test_missing_iva_uses_default(invoice_store, invoice_payload):
    payload = invoice_payload(total=121.0)
    payload["ivaPercentage"] = None

    mapped = _map(invoice_store, payload)

    assert mapped.iva_percentage == Decimal("21")
    assert mapped.has_totals_mismatch is False


@pytest.mark.parametrize(
    "field,value",
    [("invoiceCode", ""), ("invoiceCode", "   ")],
)
def test_missing_invoice_code_is_parsing_error(invoice_store, invoice_payload, field, value):
    payload = invoice_payload()
    payload[field] = value

    with pytest.raises(MappingError) as exc_info:
        _map(invoice_store, payload)

    assert exc_info.value.kind is ErrorKind.PARSING_ERROR


def test_missing_cif_is_parsing_error(invoice_store, invoice_payload):
    payload = invoice_payload(cif=None)

    with pytest.raises(MappingError) as exc_info:
        _map(invoice_store, payload)

    assert exc_info.value.kind is ErrorKind.PARSING_ERROR
    assert invoice_store.providers == {}


def test_zero_items_is_parsing_error(invoice_store, invoice_payload):
    with pytest.raises(MappingError) as exc_info:
        _map(invoice_store, invoice_payload(items=[]))

    assert exc_info.value.kind is ErrorKind.PARSING_ERROR


def test_non_numeric_quantity_is_parsing_error(invoice_store, invoice_payload):
    payload = invoice_payload(
        items=[{"materialName": "A", "quantity": "muchos", "unitPrice": 1, "totalPrice": 1}]
    )

    with pytest.raises(MappingError):
        _map(invoice_store, payload)


def test_unit_price_recomputed_from_list_price_and_discount(invoice_store, invoice_payload):
    payload = invoice_payload(
        items=[
            {
                "materialName": "Codo 90",
                "quantity": 3,
                "listPrice": 12.5,
                "discountPercentage": 33,
                "discountRaw": "33%",
                "unitPrice": 8.37,
                "totalPrice": 25.13,
            }
        ]
    )

    item = _map(invoice_store, payload).items[0]

    assert item.unit_price == Decimal("8.38")
    assert item.list_price == Decimal("12.5")
    assert item.discount_raw == "33%"


def test_inconsistent_unit_price_is_trusted():
    assert effective_unit_price(Decimal("9.00"), Decimal("12.50"), Decimal("33")) == Decimal("9.00")
    assert effective_unit_price(None, Decimal("10"), Decimal("50")) == Decimal("5.00")
    assert effective_unit_price(Decimal("4"), None, Decimal("50")) == Decimal("4")


def test_provider_is_resolved_by_normalized_cif(invoice_store, invoice_payload):
    mapped = _map(invoice_store, invoice_payload(cif=" b-12.345.678 "))

    assert mapped.provider.cif == "B12345678"
    assert list(invoice_store.providers) == ["B12345678"]


def test_missing_total_price_is_computed(invoice_store, invoice_payload):
    payload = invoice_payload(
        items=[{"materialName": "A", "quantity": "2,5", "unitPrice": 4, "totalPrice": None}]
    )

    item = _map(invoice_store, payload).items[0]

    assert item.quantity == Decimal("2.5")
    assert item.total_price == Decimal("10.00")


def test_line_without_name_uses_code_or_is_skipped(invoice_store, invoice_payload):
    payload = invoice_payload(
        items=[
            {"materialName": "", "materialCode": "REF-9", "quantity": 1, "unitPrice": 1, "totalPrice": 1},
            {"materialName": None, "quantity": 1, "unitPrice": 1, "totalPrice": 1},
        ]
    )

    items = _map(invoice_store, payload).items

    assert [item.material_name for item in items] == ["CODE: REF-9"]
    assert items[0].material_code == "REF-9"


def test_numeric_codes_and_work_orders_become_text(invoice_store, invoice_payload):
    payload = invoice_payload(
        items=[
            {"materialName": "Codo 90", "materialCode": 987, "quantity": 1, "unitPrice": 1, "totalPrice": 1, "workOrder": 1234},
            {"materialName": "Codo 45", "materialCode": 12.0, "quantity": 1, "unitPrice": 1, "totalPrice": 1},
        ]
    )

    items = _map(invoice_store, payload).items

    assert [item.material_code for item in items] == ["987", "12"]
    assert [item.work_order for item in items] == ["1234", "1234"]


def test_helpers():
    assert normalize_cif("es b1234 5678") == "ESB12345678"
    assert material_code_for("Tubo  PVC 40mm") == "tubo-pvc-40mm"
    assert material_code_for("X" * 80) == "x" * 50
    assert material_code_for("Tubo", " T-1 ") == "T-1"
