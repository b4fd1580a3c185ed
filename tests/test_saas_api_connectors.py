"""
Tests for the Xero and Spendesk connectors against mocked REST APIs.
"""

import base64
from datetime import datetime
from urllib.parse import parse_qs

import httpx
import pytest

from dataplane.connectors.api.rest import parse_read
from dataplane.connectors.api.spendesk import SpendeskConnector
from dataplane.connectors.api.xero import XeroConnector, parse_xero_date
from dataplane.connectors.models import ConnectionConfig, ConnectionStatus, SourceType
from dataplane.connectors.registry import ConnectionRegistry, StaticConfigStore
from dataplane.errors import AuthenticationError, ConfigurationError, QueryError, RateLimitError
from dataplane.quality import CheckConfig, CheckType, QualityEngine

XERO_API = "/api.xro/2.0"
UPDATED = "/Date(1717243200000+0000)/"


def xero_config(**credentials):
    return ConnectionConfig(
        id="ledger",
        source_type=SourceType.XERO,
        credentials={
            "client_id": "app-id",
            "client_secret": "app-secret",
            "access_token": "xero-token",
            "refresh_token": "refresh-1",
            "tenant_id": "tenant-1",
            **credentials,
        },
    )


def spendesk_config(**credentials):
    return ConnectionConfig(
        id="spend",
        source_type=SourceType.SPENDESK,
        credentials={"api_key": "sk-live", **credentials},
    )


def invoice(n):
    return {"InvoiceID": f"inv-{n}", "ContactID": f"c-{n % 7}", "Total": 10.0 * n, "UpdatedDateUTC": UPDATED}


class FakeXero:
    """Accounting API with paged invoices and the identity service."""

    def __init__(self, invoices=103):
        self.requests = []
        self.invoices = [invoice(n) for n in range(1, invoices + 1)]
        self.organisation_status = 200
        self.accounts_response = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == f"{XERO_API}/Organisation":
            if self.organisation_status != 200:
                return httpx.Response(self.organisation_status, json={"Title": "Unauthorized", "Detail": "TokenExpired"})
            return httpx.Response(200, json={"Organisations": [{"Name": "Acme Ltd", "OrganisationID": "org-1"}]})

        if path == f"{XERO_API}/Invoices":
            page = int(request.url.params.get("page", 1))
            chunk = self.invoices[(page - 1) * 100:page * 100]
            return httpx.Response(200, json={"Invoices": chunk})

        if path == f"{XERO_API}/Accounts":
            if self.accounts_response is not None:
                return self.accounts_response
            return httpx.Response(200, json={"Accounts": [{"AccountID": "a-1", "Code": "200"}]})

        if path == "/connect/token":
            form = parse_qs(request.content.decode())
            if form.get("refresh_token") == ["revoked"]:
                return httpx.Response(400, json={"error": "invalid_grant"})
            return httpx.Response(200, json={
                "access_token": "fresh-token",
                "refresh_token": "refresh-2",
                "expires_in": 1800,
            })

        return httpx.Response(404, json={"Title": "NotFound", "Detail": f"No route for {path}"})


class FakeSpendesk:
    """Public API returning records under "data"."""

    def __init__(self):
        self.requests = []
        self.status = 200

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if request.headers.get("Authorization") != "Bearer sk-live":
            return httpx.Response(401, json={"message": "Invalid API key"})
        if self.status != 200 and path != "/v1/accounts":
            return httpx.Response(self.status, json={"message": "upstream failure"})

        if path == "/v1/accounts":
            return httpx.Response(200, json={"data": [{"id": "acc-1", "name": "Acme"}]})
        if path == "/v1/card_transactions":
            return httpx.Response(200, json={"data": [{"id": "tx-1", "card_id": "card-1", "amount": 12.5}]})
        if path == "/v1/users":
            return httpx.Response(200, json={"data": [
                {"id": "u-1", "email": "ann@example.com", "team_id": "t-1"},
                {"id": "u-2", "email": "bob@example.com", "team_id": None},
            ]})
        return httpx.Response(400, json={"message": f"Unknown endpoint {path}"})


@pytest.fixture
def xero_api():
    return FakeXero()


@pytest.fixture
def xero(xero_api):
    return XeroConnector(xero_config(), transport=httpx.MockTransport(xero_api))


@pytest.fixture
def spendesk_api():
    return FakeSpendesk()


@pytest.fixture
def spendesk(spendesk_api):
    return SpendeskConnector(spendesk_config(), transport=httpx.MockTransport(spendesk_api))


class TestXeroConnector:
    """Accounting API behaviour behind the connector contract."""

    @pytest.mark.asyncio
    async def test_connect_sends_token_and_tenant(self, xero, xero_api):
        """Test the bearer token and tenant header reach the API."""
        async with xero:
            assert await xero.ping()
            assert await xero.get_version() == "Xero API v2.0"
            organisation = await xero.get_organisation()

        probe = xero_api.requests[0]
        assert probe.url.path == f"{XERO_API}/Organisation"
        assert probe.headers["Authorization"] == "Bearer xero-token"
        assert probe.headers["Xero-Tenant-Id"] == "tenant-1"
        assert organisation["Name"] == "Acme Ltd"

    @pytest.mark.asyncio
    async def test_invoices_follow_pages(self, xero, xero_api):
        """Test paged endpoints are read until a short page."""
        async with xero:
            invoices = await xero.get_invoices(status="AUTHORISED")

        assert len(invoices) == 103
        pages = [r for r in xero_api.requests if r.url.path.endswith("/Invoices")]
        assert [r.url.params["page"] for r in pages] == ["1", "2"]
        assert pages[0].url.params["Statuses"] == "AUTHORISED"
        assert invoices[0]["UpdatedDateUTC"] == datetime(2024, 6, 1, 12, 0)

    @pytest.mark.asyncio
    async def test_modified_since_header(self, xero, xero_api):
        """Test incremental reads send If-Modified-Since."""
        async with xero:
            await xero.fetch("accounts", modified_since=datetime(2024, 5, 1, 8, 30))

        accounts = [r for r in xero_api.requests if r.url.path.endswith("/Accounts")]
        assert accounts[0].headers["If-Modified-Since"] == "2024-05-01T08:30:00"

    @pytest.mark.asyncio
    async def test_select_with_limit(self, xero, xero_api):
        """Test a whole-endpoint read stops paging at the limit and projects columns."""
        async with xero:
            result = await xero.execute_query("SELECT InvoiceID, Total FROM invoices LIMIT 5")

        assert result.columns == ["InvoiceID", "Total"]
        assert result.row_count == 5
        assert result.rows[0] == {"InvoiceID": "inv-1", "Total": 10.0}
        assert len([r for r in xero_api.requests if r.url.path.endswith("/Invoices")]) == 1

    @pytest.mark.asyncio
    async def test_filtered_query_rejected(self, xero):
        """Test queries beyond a whole-endpoint read are fatal query errors."""
        async with xero:
            with pytest.raises(QueryError) as exc_info:
                await xero.execute_query("SELECT * FROM invoices WHERE Total > 5")

        assert not exc_info.value.retryable
        assert "fetch()" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_minute_limit_is_retryable(self, xero, xero_api):
        """Test a per-minute throttle carries Retry-After and may be retried."""
        xero_api.accounts_response = httpx.Response(
            429, headers={"Retry-After": "30", "X-Rate-Limit-Problem": "minute"}, json={"Title": "Rate limit"},
        )
        async with xero:
            with pytest.raises(RateLimitError) as exc_info:
                await xero.get_accounts()

        assert exc_info.value.retryable
        assert exc_info.value.retry_after_ms == 30000
        assert exc_info.value.context["problem"] == "MINUTE"

    @pytest.mark.asyncio
    async def test_daily_limit_is_not_retryable(self, xero, xero_api):
        """Test the daily throttle is not retried."""
        xero_api.accounts_response = httpx.Response(
            429, headers={"X-Rate-Limit-Problem": "day"}, json={"Title": "Rate limit"},
        )
        async with xero:
            with pytest.raises(RateLimitError) as exc_info:
                await xero.get_accounts()

        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_outage_is_retryable(self, xero, xero_api):
        """Test a 503 from the API is a retryable query error."""
        xero_api.accounts_response = httpx.Response(503, json={"Detail": "The organisation is offline"})
        async with xero:
            with pytest.raises(QueryError) as exc_info:
                await xero.get_accounts()

        assert exc_info.value.retryable
        assert exc_info.value.code == "503"

    @pytest.mark.asyncio
    async def test_expired_token(self, xero, xero_api):
        """Test a rejected token fails the connect as an authentication error."""
        xero_api.organisation_status = 401

        with pytest.raises(AuthenticationError) as exc_info:
            await xero.connect()

        assert "TokenExpired" in str(exc_info.value)
        assert xero.status == ConnectionStatus.ERROR

    @pytest.mark.asyncio
    async def test_catalog(self, xero):
        """Test endpoints are tables with declared keys and references."""
        async with xero:
            tables = await xero.list_tables(schema="accounting")
            columns = {c.name: c for c in await xero.list_columns("invoices")}
            foreign_keys = await xero.list_foreign_keys()
            fallback = await xero.list_columns("currencies")

        assert len(tables) == 17
        assert {t.database for t in tables} == {"xero_organisation"}
        assert columns["InvoiceID"].primary_key
        assert columns["ContactID"].foreign_key.table == "contacts"
        assert columns["Total"].type == "float"
        assert len(foreign_keys) == 3
        assert [c.name for c in fallback] == ["ID", "Name", "UpdatedDateUTC"]

    def test_required_credentials(self):
        """Test the tenant id and token are required."""
        config = ConnectionConfig(
            id="ledger", source_type=SourceType.XERO, credentials={"client_id": "a", "client_secret": "b"},
        )
        with pytest.raises(ConfigurationError) as exc_info:
            XeroConnector.validate_config(config)
        assert set(exc_info.value.context["missing"]) == {"access_token", "tenant_id"}


class TestXeroTokenRefresh:
    """Token refresh against the identity service."""

    @pytest.mark.asyncio
    async def test_refresh_access_token(self, xero, xero_api):
        """Test refresh uses basic client auth and returns the merged bundle."""
        credentials = await xero.refresh_access_token()

        token_request = xero_api.requests[-1]
        expected = base64.b64encode(b"app-id:app-secret").decode()
        assert token_request.headers["Authorization"] == f"Basic {expected}"
        assert parse_qs(token_request.content.decode())["grant_type"] == ["refresh_token"]
        assert credentials["access_token"] == "fresh-token"
        assert credentials["refresh_token"] == "refresh-2"
        assert credentials["tenant_id"] == "tenant-1"
        assert credentials["expires_at"] > datetime.utcnow()

    @pytest.mark.asyncio
    async def test_revoked_refresh_token(self, xero):
        """Test a rejected refresh is an authentication error."""
        with pytest.raises(AuthenticationError):
            await xero.refresh_access_token("revoked")

    def test_parse_xero_date(self):
        """Test /Date()/ strings become UTC datetimes and other values pass through."""
        assert parse_xero_date("/Date(1717243200000+0100)/") == datetime(2024, 6, 1, 12, 0)
        assert parse_xero_date("/Date(0)/") == datetime(1970, 1, 1)
        assert parse_xero_date("2024-06-01") == "2024-06-01"
        assert parse_xero_date(42) == 42


class TestXeroQuality:
    """Quality checks over an API source use the row sample."""

    @pytest.mark.asyncio
    async def test_timeliness_on_sample(self, xero_api):
        """Test Xero dates are scored by the freshness check."""
        registry = ConnectionRegistry(
            StaticConfigStore([xero_config()]),
            connector_factory=lambda config: XeroConnector(config, transport=httpx.MockTransport(xero_api)),
        )
        engine = QualityEngine(registry)
        config = CheckConfig(checks=[CheckType.TIMELINESS], check_integrity=False, sample_size=50)

        report = await engine.run("ledger", ["invoices"], config)
        result = report.results[0]
        await registry.close()

        assert result.column == "UpdatedDateUTC"
        assert result.details.total_records == 50
        assert result.score == 0.0
        assert not result.passed


class TestSpendeskConnector:
    """Public API behaviour behind the connector contract."""

    @pytest.mark.asyncio
    async def test_connect_with_api_key(self, spendesk, spendesk_api):
        """Test the API key is sent as a bearer token."""
        async with spendesk:
            account = await spendesk.get_account()
            version = await spendesk.get_version()

        probe = spendesk_api.requests[0]
        assert probe.url.path == "/v1/accounts"
        assert probe.headers["Authorization"] == "Bearer sk-live"
        assert probe.headers["User-Agent"].startswith("dataplane-connector/")
        assert account == {"id": "acc-1", "name": "Acme"}
        assert version == "Spendesk API v1"

    @pytest.mark.asyncio
    async def test_filters_become_query_parameters(self, spendesk, spendesk_api):
        """Test only the filters given are sent."""
        async with spendesk:
            transactions = await spendesk.get_card_transactions(card_id="card-1", start_date="2024-01-01")

        request = spendesk_api.requests[-1]
        assert dict(request.url.params) == {"card_id": "card-1", "start_date": "2024-01-01"}
        assert transactions[0]["amount"] == 12.5

    @pytest.mark.asyncio
    async def test_select_star(self, spendesk):
        """Test SELECT * returns whole records."""
        async with spendesk:
            result = await spendesk.execute_query("SELECT * FROM users")

        assert result.columns == ["id", "email", "team_id"]
        assert result.row_count == 2

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self, spendesk, spendesk_api):
        """Test 5xx responses are retryable query errors."""
        async with spendesk:
            spendesk_api.status = 502
            with pytest.raises(QueryError) as exc_info:
                await spendesk.get_users()

        assert exc_info.value.retryable
        assert exc_info.value.message.startswith("Server error: 502")

    @pytest.mark.asyncio
    async def test_client_error_is_fatal(self, spendesk):
        """Test a 4xx response is not retried."""
        async with spendesk:
            with pytest.raises(QueryError) as exc_info:
                await spendesk.fetch("vendors")

        assert not exc_info.value.retryable
        assert "Unknown endpoint" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_unknown_table(self, spendesk):
        """Test tables outside the catalog are rejected before any request."""
        async with spendesk:
            with pytest.raises(QueryError):
                await spendesk.fetch("payroll")

    @pytest.mark.asyncio
    async def test_invalid_key(self, spendesk_api):
        """Test a bad key fails the connect as an authentication error."""
        connector = SpendeskConnector(spendesk_config(api_key="sk-wrong"), transport=httpx.MockTransport(spendesk_api))

        with pytest.raises(AuthenticationError):
            await connector.connect()
        assert connector.status == ConnectionStatus.ERROR

    @pytest.mark.asyncio
    async def test_catalog(self, spendesk):
        """Test schemas group endpoints and references are declared."""
        async with spendesk:
            schemas = await spendesk.list_schemas()
            cards = await spendesk.list_tables(schema="cards")
            users = {c.name: c for c in await spendesk.list_columns("users")}

        assert [s.name for s in schemas] == ["expenses", "cards", "users", "vendors", "budgets", "accounting"]
        assert [t.name for t in cards] == ["cards", "card_transactions", "card_holders", "card_requests"]
        assert users["team_id"].foreign_key.table == "teams"
        assert users["id"].primary_key

    def test_missing_api_key(self):
        """Test an API key is required."""
        config = ConnectionConfig(id="spend", source_type=SourceType.SPENDESK, credentials={})
        with pytest.raises(ConfigurationError):
            SpendeskConnector.validate_config(config)


class TestParseRead:
    """Whole-endpoint read parsing."""

    def test_fields_table_and_limit(self):
        """Test columns, a schema-qualified table and the limit are split out."""
        assert parse_read("SELECT id, email FROM users.users LIMIT 10") == (["id", "email"], "users", 10)
        assert parse_read("select * from cards") == ([], "cards", None)

    def test_rejects_other_statements(self):
        """Test anything else is a fatal query error."""
        with pytest.raises(QueryError):
            parse_read("DELETE FROM users")
