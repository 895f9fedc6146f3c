from .parties import Client, Supplier
from .inventory import StockBalance, StockMovement, Production
from .sales import Sale, Payment
from .invoices import Invoice, InvoiceLine, SupplierPayment
from .checks import Check

__all__ = [
    'Client', 'Supplier',
    'StockBalance', 'StockMovement', 'Production',
    'Sale', 'Payment',
    'Invoice', 'InvoiceLine', 'SupplierPayment',
    'Check',
]
