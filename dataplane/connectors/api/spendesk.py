"""
Spendesk Connector Module.

Reads the Spendesk public API with httpx and an API key. Every endpoint
returns its records under "data".
"""

import logging
from typing import Any, Dict, List, Optional

from dataplane import __version__
from dataplane.config.settings import settings
from dataplane.connectors.api.rest import RestAPIConnector, catalog_columns
from dataplane.connectors.base import ConnectorFactory
from dataplane.connectors.models import ColumnInfo, ForeignKeyInfo, SourceType

logger = logging.getLogger(__name__)


class SpendeskConnector(RestAPIConnector):
    """
    Spendesk spend management connector.

    Endpoints are grouped into schemas by product area (expenses, cards,
    users, vendors, budgets, accounting) of a single account.
    """

    source_type = SourceType.SPENDESK
    display_name = "Spendesk"
    description = "Spend management platform via the Spendesk API"
    required_credentials = (("api_key", "apiKey"),)

    catalog_database = "spendesk_account"
    api_version = "Spendesk API v1"
    probe_path = "/accounts"
    schemas = {
        "expenses": (
            "expense_reports", "expenses", "expense_lines", "receipts",
            "expense_categories", "expense_approvals",
        ),
        "cards": ("cards", "card_transactions", "card_holders", "card_requests"),
        "users": ("users", "teams", "roles", "permissions"),
        "vendors": ("vendors", "vendor_payments", "purchase_orders"),
        "budgets": ("budgets", "budget_lines", "budget_allocations"),
        "accounting": ("accounts", "cost_centers", "projects", "tags"),
    }
    table_columns = {
        "expense_reports": catalog_columns([
            ("id", "string", False),
            ("title", "string", False),
            ("description", "string", True),
            ("user_id", "string", False),
            ("status", "string", False),
            ("currency", "string", False),
            ("total_amount", "float", False),
            ("submitted_at", "datetime", True),
            ("approved_at", "datetime", True),
            ("created_at", "datetime", False),
            ("updated_at", "datetime", False),
        ], primary_key="id"),
        "expenses": catalog_columns([
            ("id", "string", False),
            ("expense_report_id", "string", True),
            ("title", "string", False),
            ("description", "string", True),
            ("amount", "float", False),
            ("currency", "string", False),
            ("category_id", "string", True),
            ("vendor_id", "string", True),
            ("receipt_url", "string", True),
            ("date", "datetime", False),
            ("created_at", "datetime", False),
            ("updated_at", "datetime", False),
        ], primary_key="id"),
        "cards": catalog_columns([
            ("id", "string", False),
            ("holder_id", "string", False),
            ("card_number", "string", False),
            ("card_type", "string", False),
            ("status", "string", False),
            ("spending_limit", "float", True),
            ("currency", "string", False),
            ("expires_at", "datetime", False),
            ("created_at", "datetime", False),
            ("updated_at", "datetime", False),
        ], primary_key="id"),
        "users": catalog_columns([
            ("id", "string", False),
            ("email", "string", False),
            ("first_name", "string", False),
            ("last_name", "string", False),
            ("role", "string", False),
            ("team_id", "string", True),
            ("manager_id", "string", True),
            ("status", "string", False),
            ("created_at", "datetime", False),
            ("updated_at", "datetime", False),
        ], primary_key="id"),
    }
    default_columns = [
        ColumnInfo(name="id", type="string", nullable=False, primary_key=True),
        ColumnInfo(name="name", type="string"),
        ColumnInfo(name="created_at", type="datetime", nullable=False),
        ColumnInfo(name="updated_at", type="datetime", nullable=False),
    ]
    foreign_keys = [
        ForeignKeyInfo("expense_report_user_fk", "expense_reports", "user_id", "users", "id"),
        ForeignKeyInfo("expense_expense_report_fk", "expenses", "expense_report_id", "expense_reports", "id"),
        ForeignKeyInfo("card_user_fk", "cards", "holder_id", "users", "id"),
        ForeignKeyInfo("user_team_fk", "users", "team_id", "teams", "id"),
    ]

    def base_url(self) -> str:
        credentials = self.config.credentials
        return (credentials.get("base_url") or settings.connectors.spendesk_api_url).rstrip("/")

    def auth_headers(self) -> Dict[str, str]:
        credentials = self.config.credentials
        api_key = credentials.get("api_key") or credentials.get("apiKey")
        return {
            "Authorization": f"Bearer {api_key}",
            "User-Agent": f"dataplane-connector/{__version__}",
        }

    async def _fetch(self, table: str, limit: Optional[int], params: Dict[str, Any]) -> List[Dict[str, Any]]:
        body = await self._request("GET", f"/{table}", params=params)
        rows = (body.get("data") or []) if isinstance(body, dict) else body
        return rows[:limit] if limit is not None else rows

    # Typed reads

    async def get_expense_reports(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        return await self.fetch("expense_reports", status=status)

    async def get_expenses(self, expense_report_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return await self.fetch("expenses", expense_report_id=expense_report_id)

    async def get_cards(self, holder_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return await self.fetch("cards", holder_id=holder_id)

    async def get_card_transactions(
        self,
        card_id: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        return await self.fetch("card_transactions", card_id=card_id, start_date=start_date, end_date=end_date)

    async def get_users(self) -> List[Dict[str, Any]]:
        return await self.fetch("users")

    async def get_vendors(self) -> List[Dict[str, Any]]:
        return await self.fetch("vendors")

    async def get_account(self) -> Optional[Dict[str, Any]]:
        """The account record, or the raw response when it carries no data list."""
        self._ensure_connected()
        body = await self._request("GET", self.probe_path)
        data = body.get("data") if isinstance(body, dict) else None
        if data:
            return data[0]
        return body or None


# Register connector
ConnectorFactory.register(SourceType.SPENDESK, SpendeskConnector)
