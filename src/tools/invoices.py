"""MCP tools for QuickBooks invoices."""

import logging
from datetime import date

from fastmcp import FastMCP

from src.models.invoice import (
    AgingReport,
    CreateInvoiceRequest,
    Invoice,
    InvoiceFilter,
    InvoiceItemInput,
    InvoiceList,
    InvoiceSummary,
    InvoiceUpdate,
)
from src.server import get_services
from src.tools.date_utils import format_display, parse_date
from src.tools.error_messages import safe_tool_wrapper

logger = logging.getLogger(__name__)

_AGING_BUCKETS = (
    ("current", "Current (0-30 days)"),
    ("days_31_60", "31-60 days"),
    ("days_61_90", "61-90 days"),
    ("days_91_120", "91-120 days"),
    ("over_120", "Over 120 days"),
)


def _summary_line(inv: InvoiceSummary) -> str:
    return (
        f"  #{inv.invoice_number} (id {inv.id}) {inv.customer}: {inv.total} "
        f"(balance {inv.balance}), dated {inv.date}, due {inv.due_date} [{inv.status}]"
    )


def format_invoice_list(result: InvoiceList) -> str:
    if not result.count:
        return "No invoices match those filters."
    lines = [f"{result.summary}, total ${result.total_amount:,.2f}:"]
    lines.extend(_summary_line(inv) for inv in result.invoices)
    return "\n".join(lines)


def format_invoice(invoice: Invoice) -> str:
    number = invoice.doc_number or f"INV-{invoice.id}"
    lines = [
        f"Invoice #{number} (id {invoice.id})",
        f"  Customer: {invoice.customer_name or invoice.customer_id}",
        f"  Date: {format_display(invoice.txn_date)}",
        f"  Due: {format_display(invoice.due_date)}",
        f"  Total: ${invoice.total_amount:,.2f}",
        f"  Balance: ${invoice.balance:,.2f}",
    ]
    if invoice.email_status:
        lines.append(f"  Email status: {invoice.email_status}")
    if invoice.private_note:
        lines.append(f"  Memo: {invoice.private_note}")
    for line in invoice.lines:
        qty = f" x{line.quantity:g}" if line.quantity else ""
        lines.append(f"  - {line.description or 'Item'}{qty}: ${line.amount:,.2f}")
    return "\n".join(lines)


def format_aging_report(report: AgingReport) -> str:
    if not report.invoice_count:
        return f"No unpaid invoices as of {format_display(report.as_of)}."
    lines = [f"Accounts receivable aging as of {format_display(report.as_of)}:"]
    for field, label in _AGING_BUCKETS:
        bucket: list[InvoiceSummary] = getattr(report, field)
        if not bucket:
            continue
        lines.append(f"\n{label} ({len(bucket)}):")
        lines.extend(_summary_line(inv) for inv in bucket)
    return "\n".join(lines)


def register_invoice_tools(mcp: FastMCP) -> None:
    """Register invoice tools on the MCP server."""

    @mcp.tool
    async def get_invoices(
        status: str | None = None,
        customer_name: str | None = None,
        date_from: str | None = None,
        date_to: str | None = None,
        min_amount: float | None = None,
        max_amount: float | None = None,
        limit: int | None = None,
    ) -> str:
        """List invoices with natural-language filters, newest first.

        Args:
            status: "unpaid", "paid", "overdue" or "all".
            customer_name: Exact customer display or company name.
            date_from: Earliest transaction date, e.g. "last month",
                       "Q1 2024", "2024-01-01".
            date_to: Latest transaction date.
            min_amount: Minimum invoice total.
            max_amount: Maximum invoice total.
            limit: Maximum number of invoices (1-100).

        Returns:
            One line per invoice with totals and status.
        """

        async def _run() -> str:
            invoice_filter = InvoiceFilter(
                status=status,
                customer_name=customer_name,
                date_from=date_from,
                date_to=date_to,
                min_amount=min_amount,
                max_amount=max_amount,
                limit=limit,
            )
            result = await get_services().invoices.get_invoices(invoice_filter)
            return format_invoice_list(result)

        return await safe_tool_wrapper(_run)

    @mcp.tool
    async def get_invoice(invoice_id: str) -> str:
        """Show one invoice with its line items.

        Args:
            invoice_id: QuickBooks invoice ID (not the invoice number).
        """

        async def _run() -> str:
            invoice = await get_services().invoices.get_invoice(invoice_id)
            return format_invoice(invoice)

        return await safe_tool_wrapper(_run, context={"invoice": invoice_id})

    @mcp.tool
    async def create_invoice(
        customer_name: str,
        items: list[InvoiceItemInput],
        due_date: str | None = None,
        memo: str | None = None,
        email_to_customer: bool = False,
    ) -> str:
        """Create a new invoice for an existing customer.

        Args:
            customer_name: Customer name; must already exist in QuickBooks.
            items: Line items, each with description and amount, optionally
                   quantity and unit_price.
            due_date: Due date (defaults to 30 business days from today).
            memo: Private note stored on the invoice.
            email_to_customer: Email the invoice right after creating it.

        Returns:
            Confirmation with the new invoice's number and total.
        """

        async def _run() -> str:
            request = CreateInvoiceRequest(
                customer_name=customer_name,
                items=items,
                due_date=due_date,
                memo=memo,
                email_to_customer=email_to_customer,
            )
            invoice = await get_services().invoices.create_invoice(request)
            number = invoice.doc_number or invoice.id
            message = (
                f"Created invoice #{number} (id {invoice.id}) for "
                f"{invoice.customer_name or customer_name}: ${invoice.total_amount:,.2f}, "
                f"due {format_display(invoice.due_date)}."
            )
            if email_to_customer:
                message += " Emailed to the customer."
            return message

        return await safe_tool_wrapper(_run)

    @mcp.tool
    async def update_invoice(
        invoice_id: str,
        due_date: str | None = None,
        memo: str | None = None,
        customer_memo: str | None = None,
        email: str | None = None,
    ) -> str:
        """Change fields on an existing invoice. Unset fields stay as they are.

        Args:
            invoice_id: QuickBooks invoice ID.
            due_date: New due date (natural language accepted).
            memo: New private note.
            customer_memo: Message shown to the customer on the invoice.
            email: Billing email address.
        """

        async def _run() -> str:
            updates = InvoiceUpdate(
                due_date=due_date, memo=memo, customer_memo=customer_memo, email=email
            )
            invoice = await get_services().invoices.update_invoice(invoice_id, updates)
            return "Updated invoice.\n" + format_invoice(invoice)

        return await safe_tool_wrapper(_run, context={"invoice": invoice_id})

    @mcp.tool
    async def delete_invoice(invoice_id: str) -> str:
        """Permanently delete an invoice.

        Args:
            invoice_id: QuickBooks invoice ID.
        """

        async def _run() -> str:
            await get_services().invoices.delete_invoice(invoice_id)
            return f"Deleted invoice {invoice_id}."

        return await safe_tool_wrapper(_run, context={"invoice": invoice_id})

    @mcp.tool
    async def send_invoice(invoice_id: str, email: str | None = None) -> str:
        """Email an invoice to the customer.

        Args:
            invoice_id: QuickBooks invoice ID.
            email: Recipient address (defaults to the customer's email on file).
        """

        async def _run() -> str:
            await get_services().invoices.send_invoice(invoice_id, email)
            return f"Sent invoice {invoice_id} to {email or 'the customer address on file'}."

        return await safe_tool_wrapper(_run, context={"invoice": invoice_id})

    @mcp.tool
    async def get_invoice_aging(as_of_date: str | None = None) -> str:
        """Accounts receivable aging: unpaid invoices grouped by age.

        Args:
            as_of_date: Report date (defaults to today; natural language accepted).
        """

        async def _run() -> str:
            as_of = date.fromisoformat(parse_date(as_of_date)) if as_of_date else None
            report = await get_services().invoices.get_aging_report(as_of)
            return format_aging_report(report)

        return await safe_tool_wrapper(_run)
