"""
Xero Connector Module.

Reads the Xero accounting API with httpx using an OAuth2 bearer token and
the organisation's tenant id, and refreshes that token against the Xero
identity service.
"""

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx

from dataplane.config.settings import settings
from dataplane.connectors.api.rest import RestAPIConnector, catalog_columns
from dataplane.connectors.base import ConnectorFactory
from dataplane.connectors.models import ColumnInfo, ForeignKeyInfo, SourceType
from dataplane.errors import AuthenticationError, ConnectorConnectionError

logger = logging.getLogger(__name__)

PAGE_SIZE = 100
DEFAULT_TOKEN_LIFETIME = 1800

_XERO_DATE = re.compile(r"^/Date\((?P<ms>-?\d+)(?P<offset>[+-]\d{4})?\)/$")

# table -> (endpoint, response key)
ENDPOINTS = {
    "accounts": ("Accounts", "Accounts"),
    "contacts": ("Contacts", "Contacts"),
    "invoices": ("Invoices", "Invoices"),
    "payments": ("Payments", "Payments"),
    "items": ("Items", "Items"),
    "taxRates": ("TaxRates", "TaxRates"),
    "currencies": ("Currencies", "Currencies"),
    "employees": ("Employees", "Employees"),
    "expenses": ("ExpenseClaims", "ExpenseClaims"),
    "bankTransactions": ("BankTransactions", "BankTransactions"),
    "creditNotes": ("CreditNotes", "CreditNotes"),
    "quotes": ("Quotes", "Quotes"),
    "receipts": ("Receipts", "Receipts"),
    "purchaseOrders": ("PurchaseOrders", "PurchaseOrders"),
    "journals": ("Journals", "Journals"),
    "organisations": ("Organisation", "Organisations"),
    "users": ("Users", "Users"),
}

PAGED = {"invoices", "contacts", "payments", "bankTransactions", "creditNotes", "quotes", "purchaseOrders"}


def parse_xero_date(value: Any) -> Any:
    """Convert a /Date(ms+zzzz)/ string to a naive UTC datetime; other values pass through."""
    if not isinstance(value, str):
        return value
    match = _XERO_DATE.match(value)
    if not match:
        return value
    # The millisecond count is already UTC; the offset only records the local zone
    return datetime(1970, 1, 1) + timedelta(milliseconds=int(match.group("ms")))


def _convert_dates(record: Dict[str, Any]) -> Dict[str, Any]:
    return {key: parse_xero_date(value) for key, value in record.items()}


class XeroConnector(RestAPIConnector):
    """
    Xero accounting connector.

    Each accounting API endpoint is a table in the "accounting" schema of
    a single organisation. Paged endpoints are read 100 records at a time;
    journals are read by journal number offset.
    """

    source_type = SourceType.XERO
    display_name = "Xero"
    description = "Accounting platform via the Xero API"
    features = ("schema_discovery", "endpoint_reads", "token_refresh", "modified_since")
    required_credentials = ("client_id", "client_secret", "access_token", "tenant_id")

    catalog_database = "xero_organisation"
    api_version = "Xero API v2.0"
    probe_path = "/Organisation"
    schemas = {"accounting": tuple(ENDPOINTS)}
    table_columns = {
        "accounts": catalog_columns([
            ("AccountID", "string", False),
            ("Code", "string", False),
            ("Name", "string", False),
            ("Type", "string", False),
            ("BankAccountNumber", "string", True),
            ("Status", "string", False),
            ("Description", "string", True),
            ("Class", "string", True),
            ("SystemAccount", "string", True),
            ("EnablePaymentsToAccount", "boolean", True),
            ("ShowInExpenseClaims", "boolean", True),
            ("TaxType", "string", True),
            ("UpdatedDateUTC", "datetime", True),
        ], primary_key="AccountID"),
        "contacts": catalog_columns([
            ("ContactID", "string", False),
            ("ContactNumber", "string", True),
            ("AccountNumber", "string", True),
            ("ContactStatus", "string", False),
            ("Name", "string", False),
            ("FirstName", "string", True),
            ("LastName", "string", True),
            ("EmailAddress", "string", True),
            ("BankAccountDetails", "string", True),
            ("TaxNumber", "string", True),
            ("AccountsReceivableTaxType", "string", True),
            ("AccountsPayableTaxType", "string", True),
            ("IsSupplier", "boolean", True),
            ("IsCustomer", "boolean", True),
            ("UpdatedDateUTC", "datetime", True),
        ], primary_key="ContactID"),
        "invoices": catalog_columns([
            ("InvoiceID", "string", False),
            ("InvoiceNumber", "string", False),
            ("Reference", "string", True),
            ("Type", "string", False),
            ("ContactID", "string", False),
            ("Date", "datetime", False),
            ("DueDate", "datetime", True),
            ("Status", "string", False),
            ("LineAmountTypes", "string", False),
            ("SubTotal", "float", False),
            ("TotalTax", "float", False),
            ("Total", "float", False),
            ("AmountDue", "float", False),
            ("AmountPaid", "float", False),
            ("AmountCredited", "float", False),
            ("CurrencyCode", "string", False),
            ("FullyPaidOnDate", "datetime", True),
            ("UpdatedDateUTC", "datetime", True),
        ], primary_key="InvoiceID"),
    }
    default_columns = [
        ColumnInfo(name="ID", type="string", nullable=False, primary_key=True),
        ColumnInfo(name="Name", type="string"),
        ColumnInfo(name="UpdatedDateUTC", type="datetime"),
    ]
    foreign_keys = [
        ForeignKeyInfo("invoice_contact_fk", "invoices", "ContactID", "contacts", "ContactID"),
        ForeignKeyInfo("payment_invoice_fk", "payments", "InvoiceID", "invoices", "InvoiceID"),
        ForeignKeyInfo("payment_account_fk", "payments", "AccountID", "accounts", "AccountID"),
    ]

    def base_url(self) -> str:
        return (self.config.credentials.get("api_url") or settings.connectors.xero_api_url).rstrip("/")

    def auth_headers(self) -> Dict[str, str]:
        credentials = self.config.credentials
        return {
            "Authorization": f"Bearer {credentials['access_token']}",
            "Xero-Tenant-Id": str(credentials["tenant_id"]),
        }

    @staticmethod
    def _rate_limit_problem(response: httpx.Response) -> Optional[str]:
        problem = response.headers.get("X-Rate-Limit-Problem")
        return problem.upper() if problem else None

    async def _fetch(self, table: str, limit: Optional[int], params: Dict[str, Any]) -> List[Dict[str, Any]]:
        endpoint, key = ENDPOINTS[table]
        headers = {}
        modified_since = params.pop("modified_since", None)
        if modified_since is not None:
            if modified_since.tzinfo is not None:
                modified_since = modified_since.astimezone(timezone.utc).replace(tzinfo=None)
            headers["If-Modified-Since"] = modified_since.strftime("%Y-%m-%dT%H:%M:%S")

        rows: List[Dict[str, Any]] = []
        page = 1
        offset = params.pop("offset", None)
        while True:
            query = dict(params)
            if table in PAGED:
                query["page"] = page
            elif table == "journals" and offset is not None:
                query["offset"] = offset
            body = await self._request("GET", f"/{endpoint}", params=query, headers=headers)
            batch = [_convert_dates(record) for record in body.get(key) or []]
            rows.extend(batch)

            if limit is not None and len(rows) >= limit:
                return rows[:limit]
            if len(batch) < PAGE_SIZE:
                return rows
            if table in PAGED:
                page += 1
            elif table == "journals":
                offset = batch[-1].get("JournalNumber")
            else:
                return rows

    # Typed reads

    async def get_accounts(self) -> List[Dict[str, Any]]:
        return await self.fetch("accounts")

    async def get_contacts(self) -> List[Dict[str, Any]]:
        return await self.fetch("contacts")

    async def get_invoices(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        return await self.fetch("invoices", Statuses=status)

    async def get_bank_transactions(self) -> List[Dict[str, Any]]:
        return await self.fetch("bankTransactions")

    async def get_organisation(self) -> Optional[Dict[str, Any]]:
        organisations = await self.fetch("organisations", limit=1)
        return organisations[0] if organisations else None

    # Token refresh

    async def refresh_access_token(self, refresh_token: Optional[str] = None) -> Dict[str, Any]:
        """Return the credential bundle with a fresh access token."""
        refresh_token = refresh_token or self.config.credentials.get("refresh_token")
        if not refresh_token:
            raise AuthenticationError("A refresh token is required to refresh the Xero access token")
        tokens = await self._token_request({"grant_type": "refresh_token", "refresh_token": refresh_token})
        logger.info(f"Refreshed Xero access token for {self.config.id}")
        return self._merge_tokens(tokens)

    async def _token_request(self, data: Dict[str, str]) -> Dict[str, Any]:
        credentials = self.config.credentials
        url = f"{settings.connectors.xero_identity_url.rstrip('/')}/connect/token"
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.config.connection_timeout) as client:
                response = await client.post(
                    url, data=data, auth=(credentials["client_id"], credentials["client_secret"])
                )
        except httpx.RequestError as e:
            raise ConnectorConnectionError(f"Network error calling the Xero identity service: {e}") from e

        if response.status_code in (400, 401):
            body = response.json() if response.content else {}
            raise AuthenticationError(
                body.get("error_description") or body.get("error") or "Xero rejected the token request",
                context={"error": body.get("error")},
            )
        if response.status_code != 200:
            raise ConnectorConnectionError(
                f"Xero token request failed: {response.status_code} - {response.text}",
                retryable=response.status_code >= 500,
            )
        return response.json()

    def _merge_tokens(self, tokens: Dict[str, Any]) -> Dict[str, Any]:
        expires_in = tokens.get("expires_in") or DEFAULT_TOKEN_LIFETIME
        return {
            **self.config.credentials,
            "access_token": tokens["access_token"],
            "refresh_token": tokens.get("refresh_token") or self.config.credentials.get("refresh_token"),
            "expires_at": datetime.utcnow() + timedelta(seconds=int(expires_in)),
        }


# Register connector
ConnectorFactory.register(SourceType.XERO, XeroConnector)
