"""Invoice operations composed from the cache, request queue, and API client."""

import json
import logging
from collections.abc import Callable
from datetime import date
from functools import partial
from typing import Any

from src.clients.cache import ResponseCache
from src.clients.queue import RequestQueue
from src.clients.quickbooks import QuickBooksClient
from src.clients.resilience import ValidationError
from src.models.enums import InvoiceStatus, InvoiceStatusFilter
from src.models.invoice import (
    AgingReport,
    CreateInvoiceRequest,
    Customer,
    Invoice,
    InvoiceFilter,
    InvoiceLine,
    InvoiceList,
    InvoiceSummary,
    InvoiceUpdate,
    Reference,
)
from src.tools.date_utils import (
    add_business_days,
    days_between,
    format_display,
    is_overdue,
    parse_date,
)

logger = logging.getLogger(__name__)

LIST_NAMESPACE = "invoices"
DEFAULT_DUE_BUSINESS_DAYS = 30

# Line items without an explicit product post against QBO's default service item
DEFAULT_ITEM_REF = Reference(value="1", name="Services")


# ── Parsing & formatting ─────────────────────────────────────────────────────


def parse_invoice(raw: dict) -> Invoice:
    """Parse a raw QBO ``Invoice`` object into an Invoice model."""
    customer_ref = raw.get("CustomerRef") or {}

    lines: list[InvoiceLine] = []
    for line in raw.get("Line", []):
        # Subtotal/discount lines carry no item detail
        if line.get("DetailType") != "SalesItemLineDetail":
            continue
        detail = line.get("SalesItemLineDetail", {})
        lines.append(InvoiceLine(
            description=line.get("Description"),
            amount=float(line.get("Amount", 0)),
            quantity=detail.get("Qty"),
            unit_price=detail.get("UnitPrice"),
        ))

    return Invoice(
        id=str(raw["Id"]),
        doc_number=raw.get("DocNumber"),
        txn_date=raw["TxnDate"],
        due_date=raw.get("DueDate"),
        customer_id=str(customer_ref.get("value", "")),
        customer_name=customer_ref.get("name"),
        total_amount=float(raw.get("TotalAmt", 0)),
        balance=float(raw.get("Balance", 0)),
        email_status=raw.get("EmailStatus"),
        private_note=raw.get("PrivateNote"),
        sync_token=str(raw.get("SyncToken", "0")),
        lines=lines,
    )


def parse_customer(raw: dict) -> Customer:
    email = (raw.get("PrimaryEmailAddr") or {}).get("Address")
    return Customer(
        id=str(raw["Id"]),
        display_name=raw.get("DisplayName", ""),
        company_name=raw.get("CompanyName"),
        email=email,
        balance=raw.get("Balance"),
        active=raw.get("Active", True),
    )


def invoice_status(invoice: Invoice, today: date) -> InvoiceStatus:
    if invoice.balance <= 0:
        return InvoiceStatus.PAID
    if invoice.due_date is not None and is_overdue(invoice.due_date, today):
        return InvoiceStatus.OVERDUE
    return InvoiceStatus.UNPAID


def summarize_invoice(invoice: Invoice, today: date) -> InvoiceSummary:
    return InvoiceSummary(
        id=invoice.id,
        invoice_number=invoice.doc_number or f"INV-{invoice.id}",
        customer=invoice.customer_name or "Unknown",
        txn_date=invoice.txn_date,
        date=format_display(invoice.txn_date),
        due_date=format_display(invoice.due_date),
        total=f"${invoice.total_amount:.2f}",
        balance=f"${invoice.balance:.2f}",
        status=invoice_status(invoice, today),
    )


def format_invoice_list(invoices: list[Invoice], today: date) -> InvoiceList:
    count = len(invoices)
    return InvoiceList(
        summary=f"Found {count} invoice{'' if count == 1 else 's'}",
        count=count,
        total_amount=round(sum(inv.total_amount for inv in invoices), 2),
        invoices=[summarize_invoice(inv, today) for inv in invoices],
    )


def _quote(value: str) -> str:
    """Escape a value for a single-quoted QBO query literal."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def _parse_filter_date(value: str, today: date) -> str:
    try:
        return parse_date(value, today)
    except ValueError as exc:
        raise ValidationError(
            f"Unrecognised date '{value}'. Try 'last month', 'Q1 2024' or 2024-01-31."
        ) from exc


def build_invoice_query(
    invoice_filter: InvoiceFilter, today: date, customer_id: str | None = None
) -> str:
    """Translate a filter into a QBO query string.

    Raises:
        ValidationError: If a date in the filter cannot be parsed.
    """
    conditions: list[str] = []

    status = invoice_filter.status
    if status == InvoiceStatusFilter.UNPAID:
        conditions.append("Balance > '0'")
    elif status == InvoiceStatusFilter.PAID:
        conditions.append("Balance = '0'")
    elif status == InvoiceStatusFilter.OVERDUE:
        conditions.append("Balance > '0'")
        conditions.append(f"DueDate < '{today.isoformat()}'")

    if customer_id is not None:
        conditions.append(f"CustomerRef = '{_quote(customer_id)}'")

    if invoice_filter.date_from:
        conditions.append(f"TxnDate >= '{_parse_filter_date(invoice_filter.date_from, today)}'")
    if invoice_filter.date_to:
        conditions.append(f"TxnDate <= '{_parse_filter_date(invoice_filter.date_to, today)}'")

    if invoice_filter.min_amount is not None:
        conditions.append(f"TotalAmt >= '{invoice_filter.min_amount}'")
    if invoice_filter.max_amount is not None:
        conditions.append(f"TotalAmt <= '{invoice_filter.max_amount}'")

    query = "SELECT * FROM Invoice"
    if conditions:
        query += " WHERE " + " AND ".join(conditions)
    query += " ORDER BY TxnDate DESC"
    if invoice_filter.limit:
        query += f" MAXRESULTS {invoice_filter.limit}"
    return query


def list_cache_key(invoice_filter: InvoiceFilter) -> str:
    canonical = json.dumps(
        invoice_filter.model_dump(mode="json", exclude_none=True), sort_keys=True
    )
    return f"{LIST_NAMESPACE}:{canonical}"


# ── Service ──────────────────────────────────────────────────────────────────


class InvoiceService:
    """Invoice workflows over QuickBooks.

    Reads check the cache first and only reach the API through the request
    queue on a miss. Every mutation drops the affected ``invoice:<id>`` entry
    and all cached invoice lists.

    Args:
        client: Authenticated QuickBooks client.
        cache: Shared response cache.
        queue: Shared request queue (the only path to the API).
        cache_enabled: When False, the cache is bypassed entirely.
        list_ttl: TTL in seconds for invoice lists.
        detail_ttl: TTL in seconds for single invoices.
        today: Source of the current date (overridable in tests).
    """

    def __init__(
        self,
        client: QuickBooksClient,
        cache: ResponseCache[Any],
        queue: RequestQueue[Any],
        *,
        cache_enabled: bool = True,
        list_ttl: float = 300,
        detail_ttl: float = 600,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.client = client
        self.cache = cache
        self.queue = queue
        self.cache_enabled = cache_enabled
        self.list_ttl = list_ttl
        self.detail_ttl = detail_ttl
        self._today = today

    # ── Cache helpers ───────────────────────────────────────────────────

    def _cached(self, key: str) -> Any | None:
        return self.cache.get(key) if self.cache_enabled else None

    def _store(self, key: str, value: Any, ttl: float) -> None:
        if self.cache_enabled:
            self.cache.set(key, value, ttl)

    def _invalidate(self, invoice_id: str | None = None) -> None:
        if invoice_id is not None:
            self.cache.delete(f"invoice:{invoice_id}")
        dropped = self.cache.delete_namespace(LIST_NAMESPACE)
        logger.debug("Invalidated invoice caches (id=%s, lists=%d)", invoice_id, dropped)

    # ── Lookups ─────────────────────────────────────────────────────────

    async def find_customer(self, name: str) -> Customer | None:
        """Find a customer by exact display or company name."""
        quoted = _quote(name)
        query = (
            f"SELECT * FROM Customer WHERE DisplayName = '{quoted}'"
            f" OR CompanyName = '{quoted}'"
        )
        result = await self.queue.add(partial(self.client.query, query))
        customers = result.get("QueryResponse", {}).get("Customer", [])
        if not customers:
            logger.info("No customer matching '%s'", name)
            return None
        return parse_customer(customers[0])

    async def _require_customer(self, name: str) -> Customer:
        customer = await self.find_customer(name)
        if customer is None:
            raise ValidationError(f"Customer not found: {name}")
        return customer

    async def _fetch_invoice(self, invoice_id: str) -> Invoice:
        result = await self.queue.add(partial(self.client.get, f"/invoice/{invoice_id}"))
        return parse_invoice(result["Invoice"])

    # ── Reads ───────────────────────────────────────────────────────────

    async def get_invoices(self, invoice_filter: InvoiceFilter | None = None) -> InvoiceList:
        """List invoices matching *invoice_filter*, newest first."""
        invoice_filter = invoice_filter or InvoiceFilter()
        key = list_cache_key(invoice_filter)

        cached = self._cached(key)
        if cached is not None:
            logger.info("Returning cached invoice list")
            return InvoiceList.model_validate(cached)

        today = self._today()
        customer_id = None
        if invoice_filter.customer_name:
            customer_id = (await self._require_customer(invoice_filter.customer_name)).id

        query = build_invoice_query(invoice_filter, today, customer_id)
        result = await self.queue.add(partial(self.client.query, query))
        raw_invoices = result.get("QueryResponse", {}).get("Invoice", [])

        invoice_list = format_invoice_list([parse_invoice(r) for r in raw_invoices], today)
        self._store(key, invoice_list.model_dump(mode="json"), self.list_ttl)
        return invoice_list

    async def get_invoice(self, invoice_id: str) -> Invoice:
        key = f"invoice:{invoice_id}"
        cached = self._cached(key)
        if cached is not None:
            return Invoice.model_validate(cached)

        invoice = await self._fetch_invoice(invoice_id)
        self._store(key, invoice.model_dump(mode="json"), self.detail_ttl)
        return invoice

    async def get_invoice_pdf(self, invoice_id: str) -> bytes:
        return await self.queue.add(partial(self.client.download_pdf, "Invoice", invoice_id))

    async def get_aging_report(self, as_of: date | None = None) -> AgingReport:
        """Bucket unpaid invoices by days since their transaction date."""
        as_of = as_of or self._today()
        unpaid = await self.get_invoices(InvoiceFilter(status=InvoiceStatusFilter.UNPAID))

        report = AgingReport(as_of=as_of)
        for summary in unpaid.invoices:
            if summary.status == InvoiceStatus.PAID:
                continue
            age = days_between(summary.txn_date, as_of)
            if age <= 30:
                report.current.append(summary)
            elif age <= 60:
                report.days_31_60.append(summary)
            elif age <= 90:
                report.days_61_90.append(summary)
            elif age <= 120:
                report.days_91_120.append(summary)
            else:
                report.over_120.append(summary)
        return report

    # ── Mutations ───────────────────────────────────────────────────────

    async def create_invoice(self, request: CreateInvoiceRequest) -> Invoice:
        """Create an invoice for an existing customer.

        Raises:
            ValidationError: If the customer does not exist or a date is invalid.
        """
        customer = await self._require_customer(request.customer_name)
        today = self._today()

        payload: dict[str, Any] = {
            "CustomerRef": Reference(value=customer.id, name=customer.display_name).model_dump(
                exclude_none=True
            ),
            "Line": [
                {
                    "LineNum": index,
                    "Description": item.description,
                    "Amount": item.amount,
                    "DetailType": "SalesItemLineDetail",
                    "SalesItemLineDetail": {
                        "ItemRef": DEFAULT_ITEM_REF.model_dump(exclude_none=True),
                        "UnitPrice": item.unit_price or item.amount,
                        "Qty": item.quantity or 1,
                    },
                }
                for index, item in enumerate(request.items, start=1)
            ],
        }
        if request.due_date:
            payload["DueDate"] = _parse_filter_date(request.due_date, today)
        else:
            payload["DueDate"] = add_business_days(today, DEFAULT_DUE_BUSINESS_DAYS)
        if request.memo:
            payload["PrivateNote"] = request.memo

        result = await self.queue.add(partial(self.client.post, "/invoice", payload))
        invoice = parse_invoice(result["Invoice"])
        logger.info(
            "Created invoice %s for %s (total %.2f)",
            invoice.id, customer.display_name, invoice.total_amount,
        )
        self._invalidate()

        if request.email_to_customer:
            invoice = await self.send_invoice(invoice.id, customer.email)
        return invoice

    async def update_invoice(self, invoice_id: str, updates: InvoiceUpdate) -> Invoice:
        """Apply a sparse update using the invoice's current SyncToken.

        Raises:
            ValidationError: If no fields are given or a date is invalid.
        """
        changes: dict[str, Any] = {}
        if updates.due_date:
            changes["DueDate"] = _parse_filter_date(updates.due_date, self._today())
        if updates.memo is not None:
            changes["PrivateNote"] = updates.memo
        if updates.customer_memo is not None:
            changes["CustomerMemo"] = {"value": updates.customer_memo}
        if updates.email is not None:
            changes["BillEmail"] = {"Address": updates.email}
        if not changes:
            raise ValidationError("No updates given. Provide a due date, memo, or email.")

        # Always fetch fresh: a cached SyncToken may be stale
        current = await self._fetch_invoice(invoice_id)
        payload = {"Id": invoice_id, "SyncToken": current.sync_token, "sparse": True, **changes}

        result = await self.queue.add(partial(self.client.post, "/invoice", payload))
        invoice = parse_invoice(result["Invoice"])
        logger.info("Updated invoice %s (%s)", invoice_id, ", ".join(changes))
        self._invalidate(invoice_id)
        return invoice

    async def delete_invoice(self, invoice_id: str) -> None:
        current = await self._fetch_invoice(invoice_id)
        payload = {"Id": invoice_id, "SyncToken": current.sync_token}
        await self.queue.add(
            partial(self.client.post, "/invoice", payload, {"operation": "delete"})
        )
        logger.info("Deleted invoice %s", invoice_id)
        self._invalidate(invoice_id)

    async def send_invoice(self, invoice_id: str, email: str | None = None) -> Invoice:
        """Email an invoice. Without *email*, QBO uses the customer's address on file."""
        result = await self.queue.add(
            partial(self.client.send_email, "Invoice", invoice_id, email)
        )
        logger.info("Sent invoice %s to %s", invoice_id, email or "address on file")
        self._invalidate(invoice_id)
        return parse_invoice(result["Invoice"])
