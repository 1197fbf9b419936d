import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional, Set

from psycopg import errors

from facturas.core.domain.invoice import (
    DuplicateInvoiceError,
    MappedInvoice,
    MappedLineItem,
    Material,
    PersistedInvoice,
    Provider,
    material_code_for,
)
from facturas.infrastructure.db import connection as db

logger = logging.getLogger(__name__)


TABLE_DDL = """
CREATE TABLE IF NOT EXISTS providers (
    id TEXT PRIMARY KEY,
    cif TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    email TEXT,
    phone TEXT,
    address TEXT,
    is_blocked BOOLEAN NOT NULL DEFAULT false,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS materials (
    id TEXT PRIMARY KEY,
    code TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    description TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS idx_materials_name_lower ON materials(lower(name));
CREATE TABLE IF NOT EXISTS invoices (
    id TEXT PRIMARY KEY,
    invoice_code TEXT NOT NULL,
    provider_id TEXT NOT NULL REFERENCES providers(id),
    issue_date DATE NOT NULL,
    total_amount NUMERIC(12, 2) NOT NULL,
    iva_percentage NUMERIC(5, 2) NOT NULL,
    retention_amount NUMERIC(12, 2) NOT NULL DEFAULT 0,
    has_totals_mismatch BOOLEAN NOT NULL DEFAULT false,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (invoice_code, provider_id)
);
CREATE TABLE IF NOT EXISTS invoice_items (
    id TEXT PRIMARY KEY,
    invoice_id TEXT NOT NULL REFERENCES invoices(id) ON DELETE CASCADE,
    material_id TEXT NOT NULL REFERENCES materials(id),
    description TEXT,
    quantity NUMERIC(12, 3) NOT NULL,
    list_price NUMERIC(12, 2),
    discount_percentage NUMERIC(6, 2),
    discount_raw TEXT,
    unit_price NUMERIC(12, 2) NOT NULL,
    total_price NUMERIC(12, 2) NOT NULL,
    work_order TEXT,
    item_date DATE NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_invoice_items_material ON invoice_items(material_id, item_date);
CREATE TABLE IF NOT EXISTS material_providers (
    material_id TEXT NOT NULL REFERENCES materials(id),
    provider_id TEXT NOT NULL REFERENCES providers(id),
    last_price NUMERIC(12, 2),
    last_price_date DATE,
    PRIMARY KEY (material_id, provider_id)
);
CREATE TABLE IF NOT EXISTS price_alerts (
    id TEXT PRIMARY KEY,
    material_id TEXT NOT NULL REFERENCES materials(id),
    provider_id TEXT NOT NULL REFERENCES providers(id),
    invoice_id TEXT NOT NULL REFERENCES invoices(id) ON DELETE CASCADE,
    old_price NUMERIC(12, 2) NOT NULL,
    new_price NUMERIC(12, 2) NOT NULL,
    percentage NUMERIC(8, 2) NOT NULL,
    effective_date DATE NOT NULL,
    status TEXT NOT NULL DEFAULT 'PENDING',
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

PROVIDER_COLUMNS = "id, cif, name, is_blocked"


def ensure_table() -> None:
    pool = db.get_pool()
    with pool.connection() as conn, conn.cursor() as cur:
        cur.execute(TABLE_DDL)
        conn.commit()


def _row_to_provider(row) -> Provider:
    getter = row.get if hasattr(row, "get") else lambda k: row[k]
    return Provider(
        id=getter("id"),
        cif=getter("cif"),
        name=getter("name"),
        is_blocked=bool(getter("is_blocked")),
    )


def _row_to_material(row) -> Material:
    getter = row.get if hasattr(row, "get") else lambda k: row[k]
    return Material(id=getter("id"), code=getter("code"), name=getter("name"))


def find_invoice(invoice_code: str, provider_id: str) -> Optional[Dict[str, Any]]:
    pool = db.get_pool()
    with pool.connection() as conn, conn.cursor() as cur:
        cur.execute(
            """
            SELECT id, invoice_code, provider_id, issue_date, total_amount
            FROM invoices
            WHERE invoice_code = %(invoice_code)s AND provider_id = %(provider_id)s
            """,
            {"invoice_code": invoice_code, "provider_id": provider_id},
        )
        return cur.fetchone()


def find_provider_by_cif(cif: str) -> Optional[Provider]:
    pool = db.get_pool()
    with pool.connection() as conn, conn.cursor() as cur:
        cur.execute(
            f"SELECT {PROVIDER_COLUMNS} FROM providers WHERE cif = %(cif)s",
            {"cif": cif},
        )
        row = cur.fetchone()
    return _row_to_provider(row) if row else None


def find_or_create_provider(cif: str, attrs: Dict[str, Any]) -> Provider:
    """Upsert by CIF; concurrent creation of the same CIF resolves to one row."""
    pool = db.get_pool()
    with pool.connection() as conn, conn.cursor() as cur:
        cur.execute(
            f"""
            INSERT INTO providers (id, cif, name, email, phone, address)
            VALUES (%(id)s, %(cif)s, %(name)s, %(email)s, %(phone)s, %(address)s)
            ON CONFLICT (cif) DO UPDATE SET
                email = COALESCE(providers.email, EXCLUDED.email),
                phone = COALESCE(providers.phone, EXCLUDED.phone),
                address = COALESCE(providers.address, EXCLUDED.address),
                updated_at = now()
            RETURNING {PROVIDER_COLUMNS}
            """,
            {
                "id": str(uuid.uuid4()),
                "cif": cif,
                "name": attrs.get("name") or cif,
                "email": attrs.get("email"),
                "phone": attrs.get("phone"),
                "address": attrs.get("address"),
            },
        )
        row = cur.fetchone()
        conn.commit()
    return _row_to_provider(row)


def is_provider_blocked(provider_id: str) -> bool:
    pool = db.get_pool()
    with pool.connection() as conn, conn.cursor() as cur:
        cur.execute(
            "SELECT is_blocked FROM providers WHERE id = %(provider_id)s",
            {"provider_id": provider_id},
        )
        row = cur.fetchone()
    return bool(row and row["is_blocked"])


def blocked_provider_ids() -> Set[str]:
    pool = db.get_pool()
    with pool.connection() as conn, conn.cursor() as cur:
        cur.execute("SELECT id FROM providers WHERE is_blocked")
        rows = cur.fetchall()
    return {row["id"] for row in rows}


def _find_or_create_material(cur, name: str, code: str, description: Optional[str]) -> Material:
    cur.execute("SELECT id, code, name FROM materials WHERE code = %(code)s", {"code": code})
    row = cur.fetchone()
    if row:
        return _row_to_material(row)
    cur.execute(
        "SELECT id, code, name FROM materials WHERE lower(name) = lower(%(name)s) LIMIT 1",
        {"name": name},
    )
    row = cur.fetchone()
    if row:
        return _row_to_material(row)

    cur.execute(
        """
        INSERT INTO materials (id, code, name, description)
        VALUES (%(id)s, %(code)s, %(name)s, %(description)s)
        ON CONFLICT (code) DO NOTHING
        RETURNING id, code, name
        """,
        {"id": str(uuid.uuid4()), "code": code, "name": name, "description": description},
    )
    row = cur.fetchone()
    if row is None:
        # Lost the race against another worker; its row is committed now.
        cur.execute("SELECT id, code, name FROM materials WHERE code = %(code)s", {"code": code})
        row = cur.fetchone()
    return _row_to_material(row)


def find_or_create_material(name: str, attrs: Dict[str, Any]) -> Material:
    code = material_code_for(name, attrs.get("code"))
    pool = db.get_pool()
    with pool.connection() as conn:
        with conn.transaction(), conn.cursor() as cur:
            material = _find_or_create_material(cur, name, code, attrs.get("description"))
    return material


def _previous_price(cur, material_id: str, provider_id: str, invoice_id: str, item: MappedLineItem):
    cur.execute(
        """
        SELECT ii.unit_price
        FROM invoice_items ii
        JOIN invoices i ON i.id = ii.invoice_id
        WHERE ii.material_id = %(material_id)s
          AND i.provider_id = %(provider_id)s
          AND ii.invoice_id <> %(invoice_id)s
          AND ii.item_date <= %(item_date)s
        ORDER BY ii.item_date DESC, i.created_at DESC
        LIMIT 1
        """,
        {
            "material_id": material_id,
            "provider_id": provider_id,
            "invoice_id": invoice_id,
            "item_date": item.item_date,
        },
    )
    row = cur.fetchone()
    return row["unit_price"] if row else None


def _insert_price_alert(cur, material_id, provider_id, invoice_id, old_price: Decimal, item) -> None:
    percentage = ((item.unit_price - old_price) / old_price * 100).quantize(Decimal("0.01"))
    cur.execute(
        """
        INSERT INTO price_alerts (id, material_id, provider_id, invoice_id, old_price, new_price, percentage, effective_date)
        VALUES (%(id)s, %(material_id)s, %(provider_id)s, %(invoice_id)s, %(old_price)s, %(new_price)s, %(percentage)s, %(effective_date)s)
        """,
        {
            "id": str(uuid.uuid4()),
            "material_id": material_id,
            "provider_id": provider_id,
            "invoice_id": invoice_id,
            "old_price": old_price,
            "new_price": item.unit_price,
            "percentage": percentage,
            "effective_date": item.item_date,
        },
    )


def _record_material_price(cur, material_id, provider_id, item: MappedLineItem) -> None:
    cur.execute(
        """
        INSERT INTO material_providers (material_id, provider_id, last_price, last_price_date)
        VALUES (%(material_id)s, %(provider_id)s, %(price)s, %(price_date)s)
        ON CONFLICT (material_id, provider_id) DO UPDATE SET
            last_price = EXCLUDED.last_price,
            last_price_date = EXCLUDED.last_price_date
        WHERE material_providers.last_price_date IS NULL
           OR EXCLUDED.last_price_date >= material_providers.last_price_date
        """,
        {
            "material_id": material_id,
            "provider_id": provider_id,
            "price": item.unit_price,
            "price_date": item.item_date,
        },
    )


def create_invoice_with_items(invoice: MappedInvoice) -> PersistedInvoice:
    """
    Store an invoice, its lines, price history and price alerts atomically.

    Raises DuplicateInvoiceError when the (invoice_code, provider) pair
    already exists; nothing is written in that case.
    """
    pool = db.get_pool()
    invoice_id = str(uuid.uuid4())
    provider_id = invoice.provider.id
    alerts = 0
    try:
        with pool.connection() as conn:
            with conn.transaction(), conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO invoices (id, invoice_code, provider_id, issue_date, total_amount, iva_percentage, retention_amount, has_totals_mismatch)
                    VALUES (%(id)s, %(invoice_code)s, %(provider_id)s, %(issue_date)s, %(total_amount)s, %(iva_percentage)s, %(retention_amount)s, %(has_totals_mismatch)s)
                    """,
                    {
                        "id": invoice_id,
                        "invoice_code": invoice.invoice_code,
                        "provider_id": provider_id,
                        "issue_date": invoice.issue_date,
                        "total_amount": invoice.total_amount,
                        "iva_percentage": invoice.iva_percentage,
                        "retention_amount": invoice.retention_amount,
                        "has_totals_mismatch": invoice.has_totals_mismatch,
                    },
                )
                seen_prices: Dict[str, Decimal] = {}
                for item in invoice.items:
                    material = _find_or_create_material(
                        cur, item.material_name, item.material_code, item.material_description
                    )
                    cur.execute(
                        """
                        INSERT INTO invoice_items (id, invoice_id, material_id, description, quantity, list_price, discount_percentage, discount_raw, unit_price, total_price, work_order, item_date)
                        VALUES (%(id)s, %(invoice_id)s, %(material_id)s, %(description)s, %(quantity)s, %(list_price)s, %(discount_percentage)s, %(discount_raw)s, %(unit_price)s, %(total_price)s, %(work_order)s, %(item_date)s)
                        """,
                        {
                            "id": str(uuid.uuid4()),
                            "invoice_id": invoice_id,
                            "material_id": material.id,
                            "description": item.material_description,
                            "quantity": item.quantity,
                            "list_price": item.list_price,
                            "discount_percentage": item.discount_percentage,
                            "discount_raw": item.discount_raw,
                            "unit_price": item.unit_price,
                            "total_price": item.total_price,
                            "work_order": item.work_order,
                            "item_date": item.item_date,
                        },
                    )
                    previous = seen_prices.get(material.id)
                    if previous is None:
                        previous = _previous_price(cur, material.id, provider_id, invoice_id, item)
                    if previous and previous != item.unit_price:
                        _insert_price_alert(cur, material.id, provider_id, invoice_id, previous, item)
                        alerts += 1
                    seen_prices[material.id] = item.unit_price
                    _record_material_price(cur, material.id, provider_id, item)
    except errors.UniqueViolation as exc:
        raise DuplicateInvoiceError(invoice.invoice_code, provider_id) from exc

    logger.info(
        "Invoice %s stored with %s items (%s price alerts)",
        invoice.invoice_code,
        len(invoice.items),
        alerts,
    )
    return PersistedInvoice(
        id=invoice_id,
        invoice_code=invoice.invoice_code,
        provider_id=provider_id,
        alerts_created=alerts,
    )
