from .registers import CashRegister, CashSession, CashMovement
from .sales import Invoice, InvoiceItem, CreditNote, CreditNoteLine
from .reports import ZReport
from .audit import AuditEvent
from .documents import DocumentSequence

__all__ = [
    'CashRegister', 'CashSession', 'CashMovement',
    'Invoice', 'InvoiceItem', 'CreditNote', 'CreditNoteLine',
    'ZReport',
    'AuditEvent',
    'DocumentSequence',
]
