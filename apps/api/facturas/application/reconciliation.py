from dataclasses import dataclass
from enum import Enum
from typing import AbstractSet, Any, Optional, Protocol

from facturas.core.domain.batch import ErrorKind
from facturas.core.domain.invoice import MappedInvoice


class InvoiceRegistry(Protocol):
    def find_invoice(self, invoice_code: str, provider_id: str) -> Optional[Any]: ...


class Decision(str, Enum):
    ACCEPT = "ACCEPT"
    SKIP = "SKIP"
    REJECT = "REJECT"


@dataclass(frozen=True)
class Outcome:
    decision: Decision
    kind: Optional[ErrorKind] = None
    message: str = ""

    @property
    def accepted(self) -> bool:
        return self.decision is Decision.ACCEPT


ACCEPT = Outcome(Decision.ACCEPT)


def check(
    invoice: MappedInvoice,
    registry: InvoiceRegistry,
    blocked_provider_ids: AbstractSet[str],
) -> Outcome:
    """
    Decide whether a mapped invoice may be persisted.

    Blocked providers are rejected before the duplicate lookup, so a repeated
    invoice from a provider that has since been blocked reports BLOCKED_PROVIDER.
    """
    provider = invoice.provider
    if provider.is_blocked or provider.id in blocked_provider_ids:
        return Outcome(
            Decision.REJECT,
            ErrorKind.BLOCKED_PROVIDER,
            f"Proveedor bloqueado: {provider.name} ({provider.cif}).",
        )
    if registry.find_invoice(invoice.invoice_code, provider.id) is not None:
        return Outcome(
            Decision.SKIP,
            ErrorKind.DUPLICATE_INVOICE,
            f"La factura {invoice.invoice_code} de {provider.name} ya existe.",
        )
    return ACCEPT
