from datetime import date
from unittest.mock import AsyncMock, MagicMock, patch

from fastmcp import Client, FastMCP

from src.clients.resilience import RateLimitError, ValidationError
from src.models.invoice import AgingReport, InvoiceList, InvoiceLine
from src.tools.invoices import (
    format_aging_report,
    format_invoice,
    format_invoice_list,
    register_invoice_tools,
)
from tests.factories import make_invoice, make_invoice_summary


def _services(**methods: object) -> MagicMock:
    services = MagicMock()
    for name, value in methods.items():
        setattr(services.invoices, name, value)
    return services


def _mcp() -> FastMCP:
    test_mcp = FastMCP("test")
    register_invoice_tools(test_mcp)
    return test_mcp


async def _call(services: MagicMock, tool: str, args: dict) -> str:
    with patch("src.tools.invoices.get_services", return_value=services):
        async with Client(_mcp()) as client:
            result = await client.call_tool(tool, args)
    return str(result)


class TestRegisterInvoiceTools:
    def test_registration_succeeds(self):
        test_mcp = FastMCP("test")
        register_invoice_tools(test_mcp)

    async def test_tools_listed(self):
        async with Client(_mcp()) as client:
            names = {t.name for t in await client.list_tools()}
        assert {
            "get_invoices",
            "get_invoice",
            "create_invoice",
            "update_invoice",
            "delete_invoice",
            "send_invoice",
            "get_invoice_aging",
        } <= names


class TestFormatters:
    def test_empty_list(self):
        result = InvoiceList(summary="Found 0 invoices", count=0, total_amount=0, invoices=[])
        assert format_invoice_list(result) == "No invoices match those filters."

    def test_list_has_header_and_lines(self):
        result = InvoiceList(
            summary="Found 1 invoice",
            count=1,
            total_amount=1250.0,
            invoices=[make_invoice_summary(total="$1250.00")],
        )
        text = format_invoice_list(result)
        assert text.startswith("Found 1 invoice, total $1,250.00:")
        assert "#1001 (id 101) Acme Corp: $1250.00" in text
        assert "[Unpaid]" in text

    def test_invoice_detail(self):
        invoice = make_invoice(
            private_note="net 30",
            email_status="EmailSent",
            lines=[InvoiceLine(description="Consulting", amount=250.0, quantity=2)],
        )
        text = format_invoice(invoice)
        assert "Invoice #1001 (id 101)" in text
        assert "Due: Mar 31, 2024" in text
        assert "Memo: net 30" in text
        assert "Email status: EmailSent" in text
        assert "- Consulting x2: $250.00" in text

    def test_empty_aging(self):
        text = format_aging_report(AgingReport(as_of=date(2024, 4, 15)))
        assert text == "No unpaid invoices as of Apr 15, 2024."

    def test_aging_skips_empty_buckets(self):
        report = AgingReport(
            as_of=date(2024, 4, 15),
            days_61_90=[make_invoice_summary()],
        )
        text = format_aging_report(report)
        assert "61-90 days (1):" in text
        assert "Current" not in text


class TestGetInvoicesTool:
    async def test_builds_filter(self):
        get_invoices = AsyncMock(return_value=InvoiceList(
            summary="Found 1 invoice",
            count=1,
            total_amount=250.0,
            invoices=[make_invoice_summary()],
        ))
        text = await _call(
            _services(get_invoices=get_invoices),
            "get_invoices",
            {"status": "unpaid", "customer_name": "Acme Corp", "limit": 5},
        )
        assert "Found 1 invoice" in text
        invoice_filter = get_invoices.await_args.args[0]
        assert invoice_filter.status == "unpaid"
        assert invoice_filter.customer_name == "Acme Corp"
        assert invoice_filter.limit == 5

    async def test_invalid_status(self):
        get_invoices = AsyncMock()
        text = await _call(_services(get_invoices=get_invoices), "get_invoices", {"status": "bogus"})
        assert "Invalid input for: status" in text
        get_invoices.assert_not_awaited()

    async def test_unknown_customer(self):
        get_invoices = AsyncMock(side_effect=ValidationError("Customer not found: Nobody"))
        text = await _call(
            _services(get_invoices=get_invoices), "get_invoices", {"customer_name": "Nobody"}
        )
        assert "Customer not found: Nobody" in text

    async def test_rate_limited(self):
        get_invoices = AsyncMock(side_effect=RateLimitError("429", retry_after=12))
        text = await _call(_services(get_invoices=get_invoices), "get_invoices", {})
        assert "throttling" in text


class TestGetInvoiceTool:
    async def test_shows_invoice(self):
        get_invoice = AsyncMock(return_value=make_invoice(id="42", doc_number="2002"))
        text = await _call(_services(get_invoice=get_invoice), "get_invoice", {"invoice_id": "42"})
        assert "Invoice #2002 (id 42)" in text
        get_invoice.assert_awaited_once_with("42")


class TestCreateInvoiceTool:
    async def test_creates(self):
        create_invoice = AsyncMock(return_value=make_invoice(id="900", doc_number="1050"))
        text = await _call(
            _services(create_invoice=create_invoice),
            "create_invoice",
            {
                "customer_name": "Acme Corp",
                "items": [{"description": "Consulting", "amount": 250}],
                "memo": "April",
            },
        )
        assert "Created invoice #1050 (id 900) for Acme Corp: $250.00" in text
        request = create_invoice.await_args.args[0]
        assert request.items[0].description == "Consulting"
        assert request.memo == "April"
        assert request.email_to_customer is False

    async def test_emailed(self):
        create_invoice = AsyncMock(return_value=make_invoice())
        text = await _call(
            _services(create_invoice=create_invoice),
            "create_invoice",
            {
                "customer_name": "Acme Corp",
                "items": [{"description": "Consulting", "amount": 250}],
                "email_to_customer": True,
            },
        )
        assert "Emailed to the customer." in text

    async def test_empty_items_rejected(self):
        create_invoice = AsyncMock()
        text = await _call(
            _services(create_invoice=create_invoice),
            "create_invoice",
            {"customer_name": "Acme Corp", "items": []},
        )
        assert "Invalid input for: items" in text
        create_invoice.assert_not_awaited()


class TestUpdateInvoiceTool:
    async def test_updates(self):
        update_invoice = AsyncMock(return_value=make_invoice(private_note="extended"))
        text = await _call(
            _services(update_invoice=update_invoice),
            "update_invoice",
            {"invoice_id": "101", "memo": "extended"},
        )
        assert "Updated invoice." in text
        invoice_id, updates = update_invoice.await_args.args
        assert invoice_id == "101"
        assert updates.memo == "extended"
        assert updates.due_date is None

    async def test_no_changes(self):
        update_invoice = AsyncMock(side_effect=ValidationError("No updates given."))
        text = await _call(
            _services(update_invoice=update_invoice), "update_invoice", {"invoice_id": "101"}
        )
        assert "Invalid request: No updates given." in text


class TestDeleteInvoiceTool:
    async def test_deletes(self):
        delete_invoice = AsyncMock(return_value=None)
        text = await _call(
            _services(delete_invoice=delete_invoice), "delete_invoice", {"invoice_id": "101"}
        )
        assert "Deleted invoice 101." in text
        delete_invoice.assert_awaited_once_with("101")


class TestSendInvoiceTool:
    async def test_sends_to_address(self):
        send_invoice = AsyncMock(return_value=make_invoice())
        text = await _call(
            _services(send_invoice=send_invoice),
            "send_invoice",
            {"invoice_id": "101", "email": "ap@acme.test"},
        )
        assert "Sent invoice 101 to ap@acme.test." in text
        send_invoice.assert_awaited_once_with("101", "ap@acme.test")

    async def test_sends_to_address_on_file(self):
        send_invoice = AsyncMock(return_value=make_invoice())
        text = await _call(_services(send_invoice=send_invoice), "send_invoice", {"invoice_id": "101"})
        assert "the customer address on file" in text


class TestGetInvoiceAgingTool:
    async def test_explicit_date(self):
        get_aging_report = AsyncMock(return_value=AgingReport(
            as_of=date(2024, 4, 15), current=[make_invoice_summary()]
        ))
        text = await _call(
            _services(get_aging_report=get_aging_report),
            "get_invoice_aging",
            {"as_of_date": "2024-04-15"},
        )
        assert "aging as of Apr 15, 2024" in text
        get_aging_report.assert_awaited_once_with(date(2024, 4, 15))

    async def test_defaults_to_today(self):
        get_aging_report = AsyncMock(return_value=AgingReport(as_of=date(2024, 4, 15)))
        await _call(_services(get_aging_report=get_aging_report), "get_invoice_aging", {})
        get_aging_report.assert_awaited_once_with(None)

    async def test_bad_date(self):
        get_aging_report = AsyncMock()
        text = await _call(
            _services(get_aging_report=get_aging_report),
            "get_invoice_aging",
            {"as_of_date": "whenever"},
        )
        assert "Cannot parse date" in text
        get_aging_report.assert_not_awaited()
