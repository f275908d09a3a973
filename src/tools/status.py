"""MCP tools and resources for help, API status, cache and queue statistics."""

import json
import logging

from fastmcp import FastMCP

from src.server import get_services
from src.tools.error_messages import safe_tool_wrapper

logger = logging.getLogger(__name__)

HELP_TOPICS: dict[str, dict] = {
    "invoices": {
        "description": "Invoice management",
        "examples": [
            'get_invoices with status "unpaid"',
            'get_invoices for customer "ABC Company" from "last quarter"',
            'create_invoice for "ABC Company" with line items',
            "send_invoice with an invoice ID",
            "get_invoice_aging for a receivables report",
        ],
        "tips": [
            'Dates accept natural language like "last month" or "Q1 2024"',
            "Customer names must match QuickBooks exactly",
            "New invoices default to 30 business days payment terms",
        ],
    },
    "dates": {
        "description": "Date expressions",
        "examples": [
            "today, yesterday, tomorrow",
            "this month, last month, next month",
            "this quarter, last quarter, Q3 2024",
            "this year, last year, ytd, fiscal year 2024",
            "March 2024, 2024-03-15, 03/15/2024",
        ],
        "tips": ["Periods resolve to their first day"],
    },
    "general": {
        "description": "QuickBooks Online MCP server",
        "available_topics": ["invoices", "dates"],
        "tips": [
            "All dates support natural language",
            "Results are cached briefly for performance",
            "API rate limits are managed automatically",
        ],
    },
}


def get_help(topic: str | None = None) -> dict:
    return HELP_TOPICS.get((topic or "").strip().lower(), HELP_TOPICS["general"])


def register_status_tools(mcp: FastMCP) -> None:
    """Register help/status tools and the statistics resources."""

    @mcp.tool
    async def help(topic: str | None = None) -> str:  # noqa: A001
        """Get help using the QuickBooks tools.

        Args:
            topic: "invoices", "dates", or leave empty for an overview.
        """
        return json.dumps(get_help(topic), indent=2)

    @mcp.tool
    async def get_api_status() -> str:
        """Check the QuickBooks connection, call budget, cache and queue health."""

        async def _run() -> str:
            services = get_services()
            status = {
                "api": {
                    "environment": services.settings.qbo_environment,
                    "configured": services.settings.is_configured,
                    "limits": services.client.get_api_limits().model_dump(),
                },
                "cache": services.cache.stats().model_dump(),
                "queue": services.queue.get_stats().model_dump(),
            }
            return json.dumps(status, indent=2)

        return await safe_tool_wrapper(_run)

    @mcp.resource("qbo://company/info", mime_type="application/json")
    async def company_info() -> dict:
        """Current QuickBooks company information."""
        services = get_services()
        return await services.queue.add(services.client.get_company_info)

    @mcp.resource("qbo://cache/stats", mime_type="application/json")
    async def cache_stats() -> dict:
        """Response cache statistics."""
        return get_services().cache.stats().model_dump()

    @mcp.resource("qbo://queue/stats", mime_type="application/json")
    async def queue_stats() -> dict:
        """Request queue statistics."""
        return get_services().queue.get_stats().model_dump()
