import json

import pytest

from facturas.infrastructure.extraction.json_recovery import (
    is_invoice_payload,
    parse_invoice_json,
    recover_json,
)

INVOICE = {
    "invoiceCode": "FAC-2024-017",
    "provider": {"name": "Ferretería Sánchez SL", "cif": "B12345678"},
    "issueDate": "2024-02-01",
    "totalAmount": 1452.36,
    "ivaPercentage": 21,
    "retentionAmount": 0,
    "items": [
        {
            "materialName": "Cable 2.5mm \"rojo\"",
            "quantity": 100,
            "unitPrice": 1.2,
            "totalPrice": 120.0,
            "workOrder": "OT-55",
            "discountRaw": "10% + 5%",
        },
        {"materialName": "Caja estanca", "quantity": 4, "unitPrice": 8.5, "totalPrice": 34.0, "workOrder": None},
    ],
}


def test_well_formed_input_round_trips():
    text = json.dumps(INVOICE, ensure_ascii=False)

    assert parse_invoice_json(text) == json.loads(text)


def test_backslash_escaped_object_is_recovered():
    escaped = json.dumps(json.dumps(INVOICE))[1:-1]
    assert escaped.startswith('{\\"')

    assert parse_invoice_json(escaped) == INVOICE


def test_string_encoded_object_is_recovered():
    assert parse_invoice_json(json.dumps(json.dumps(INVOICE))) == INVOICE
    assert parse_invoice_json(json.dumps(json.dumps(json.dumps(INVOICE)))) is None


def test_code_fences_and_invisible_characters_are_stripped():
    text = "```json\n\ufeff" + json.dumps(INVOICE) + "\u200b\n```"

    assert parse_invoice_json(text) == INVOICE


def test_comma_decimals_and_trailing_commas_are_normalized():
    text = '{"invoiceCode": "F1", "provider": {"name": "P",}, "issueDate": "2024-01-01", "totalAmount": 123,45, "items": [],}'

    result = parse_invoice_json(text)

    assert result["totalAmount"] == 123.45
    assert result["provider"] == {"name": "P"}


def test_surrounding_prose_is_ignored():
    text = "Aquí tienes el resultado:\n" + json.dumps(INVOICE) + "\nEspero que sirva."

    assert parse_invoice_json(text) == INVOICE


@pytest.mark.parametrize(
    "raw",
    ["[1,2,3]", "not json at all", "", None, '"solo texto"', "42", '{"invoiceCode": "F1"}'],
)
def test_wrong_shapes_return_none(raw):
    assert parse_invoice_json(raw) is None


def test_deeply_nested_output_returns_none():
    assert parse_invoice_json("[" * 200000 + "]" * 200000) is None
    assert recover_json("Respuesta: " + "{\"a\": " * 100000 + "1" + "}" * 100000) is None


def test_recover_json_does_not_validate_shape():
    assert recover_json("[1, 2]") == [1, 2]
    assert recover_json("nada") is None


def test_shape_check_requires_numeric_total():
    payload = dict(INVOICE, totalAmount="1452,36")
    assert not is_invoice_payload(payload)
    assert not is_invoice_payload(dict(INVOICE, totalAmount=True))
    assert not is_invoice_payload(dict(INVOICE, provider={"cif": "B1"}))
    assert is_invoice_payload(INVOICE)
