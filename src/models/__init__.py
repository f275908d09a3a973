from src.models.enums import InvoiceStatus, InvoiceStatusFilter, QBOEnvironment
from src.models.invoice import (
    AgingReport,
    CreateInvoiceRequest,
    Customer,
    Invoice,
    InvoiceFilter,
    InvoiceItemInput,
    InvoiceLine,
    InvoiceList,
    InvoiceSummary,
    InvoiceUpdate,
    Reference,
)
from src.models.status import ApiLimits, CacheStats, OAuthTokens, QueueStats

__all__ = [
    "AgingReport",
    "ApiLimits",
    "CacheStats",
    "CreateInvoiceRequest",
    "Customer",
    "Invoice",
    "InvoiceFilter",
    "InvoiceItemInput",
    "InvoiceLine",
    "InvoiceList",
    "InvoiceStatus",
    "InvoiceStatusFilter",
    "InvoiceSummary",
    "InvoiceUpdate",
    "OAuthTokens",
    "QBOEnvironment",
    "QueueStats",
    "Reference",
]
