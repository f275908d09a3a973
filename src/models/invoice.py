from datetime import date

from pydantic import BaseModel, ConfigDict, Field

from src.models.enums import InvoiceStatus, InvoiceStatusFilter


class Reference(BaseModel):
    """QBO entity reference, e.g. ``CustomerRef`` or ``ItemRef``."""

    value: str
    name: str | None = None


class InvoiceLine(BaseModel):
    description: str | None = None
    amount: float
    quantity: float | None = None
    unit_price: float | None = None


class Invoice(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    doc_number: str | None = None
    txn_date: date
    due_date: date | None = None
    customer_id: str
    customer_name: str | None = None
    total_amount: float = 0.0
    balance: float = 0.0
    email_status: str | None = None
    private_note: str | None = None
    sync_token: str = "0"
    lines: list[InvoiceLine] = []


class Customer(BaseModel):
    id: str
    display_name: str
    company_name: str | None = None
    email: str | None = None
    balance: float | None = None
    active: bool = True


class InvoiceFilter(BaseModel):
    """Filter for listing invoices. Dates accept natural language ("last month")."""

    status: InvoiceStatusFilter | None = None
    customer_name: str | None = None
    date_from: str | None = None
    date_to: str | None = None
    min_amount: float | None = None
    max_amount: float | None = None
    limit: int | None = Field(default=None, ge=1, le=100)


class InvoiceItemInput(BaseModel):
    description: str
    amount: float = Field(gt=0)
    quantity: float | None = Field(default=None, gt=0)
    unit_price: float | None = Field(default=None, gt=0)


class CreateInvoiceRequest(BaseModel):
    customer_name: str
    items: list[InvoiceItemInput] = Field(min_length=1)
    due_date: str | None = None
    memo: str | None = None
    email_to_customer: bool = False


class InvoiceUpdate(BaseModel):
    """Sparse invoice update. Only fields that are set are sent."""

    due_date: str | None = None
    memo: str | None = None
    customer_memo: str | None = None
    email: str | None = None


class InvoiceSummary(BaseModel):
    """Display-ready view of a single invoice."""

    id: str
    invoice_number: str
    customer: str
    txn_date: date
    date: str
    due_date: str
    total: str
    balance: str
    status: InvoiceStatus


class InvoiceList(BaseModel):
    summary: str
    count: int
    total_amount: float
    invoices: list[InvoiceSummary]


class AgingReport(BaseModel):
    """Unpaid invoices bucketed by age of the transaction date."""

    as_of: date
    current: list[InvoiceSummary] = []
    days_31_60: list[InvoiceSummary] = []
    days_61_90: list[InvoiceSummary] = []
    days_91_120: list[InvoiceSummary] = []
    over_120: list[InvoiceSummary] = []

    @property
    def invoice_count(self) -> int:
        return sum(
            len(bucket)
            for bucket in (
                self.current,
                self.days_31_60,
                self.days_61_90,
                self.days_91_120,
                self.over_120,
            )
        )
