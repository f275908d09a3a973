from enum import StrEnum


class QBOEnvironment(StrEnum):
    SANDBOX = "sandbox"
    PRODUCTION = "production"


class InvoiceStatus(StrEnum):
    PAID = "Paid"
    UNPAID = "Unpaid"
    OVERDUE = "Overdue"


class InvoiceStatusFilter(StrEnum):
    UNPAID = "unpaid"
    PAID = "paid"
    OVERDUE = "overdue"
    ALL = "all"
