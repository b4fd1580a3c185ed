"""
Tests for the Salesforce connector against a mocked REST API.
"""

from datetime import datetime

import httpx
import pytest

from dataplane.connectors.api.salesforce import SalesforceConnector, escape_soql_value, render_soql
from dataplane.connectors.models import ConnectionConfig, ConnectionStatus, SourceType
from dataplane.errors import AuthenticationError, ConfigurationError, RateLimitError

INSTANCE = "https://na1.my.salesforce.com"
DATA = "/services/data/v59.0"


def salesforce_config(**credentials):
    return ConnectionConfig(
        id="crm",
        source_type=SourceType.SALESFORCE,
        credentials={
            "username": "ops@example.com",
            "password": "secret",
            "security_token": "tkn",
            "api_version": "v59.0",
            **credentials,
        },
    )


class FakeSalesforce:
    """Minimal REST API: login, query paging, describe and versions."""

    def __init__(self):
        self.requests = []
        self.login_status = 200
        self.query_status = 200

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/services/oauth2/token":
            if self.login_status != 200:
                return httpx.Response(
                    self.login_status,
                    json={"error": "invalid_grant", "error_description": "authentication failure"},
                )
            return httpx.Response(200, json={"access_token": "session-token", "instance_url": INSTANCE})

        if path == f"{DATA}/":
            return httpx.Response(200, json={"sobjects": f"{DATA}/sobjects"})

        if path == f"{DATA}/query":
            if self.query_status == 429:
                return httpx.Response(
                    429,
                    headers={"Retry-After": "2"},
                    json=[{"errorCode": "REQUEST_LIMIT_EXCEEDED", "message": "TotalRequests Limit exceeded."}],
                )
            if self.query_status == 401:
                return httpx.Response(401, json=[{"errorCode": "INVALID_SESSION_ID", "message": "Session expired"}])
            return httpx.Response(200, json={
                "done": False,
                "nextRecordsUrl": f"{DATA}/query/01gD0000002HU6KIAW-2000",
                "records": [
                    {"attributes": {"type": "Account"}, "Id": "001A", "Name": "Acme",
                     "Owner": {"attributes": {"type": "User"}, "Name": "Ann"}},
                ],
            })

        if path == f"{DATA}/query/01gD0000002HU6KIAW-2000":
            return httpx.Response(200, json={
                "done": True,
                "records": [{"attributes": {"type": "Account"}, "Id": "001B", "Name": "Globex", "Owner": None}],
            })

        if path == f"{DATA}/sobjects/Contact/describe":
            return httpx.Response(200, json={"fields": [
                {"name": "Id", "type": "id", "nillable": False, "length": 18},
                {"name": "AccountId", "type": "reference", "referenceTo": ["Account"], "nillable": True},
                {"name": "Amount__c", "type": "currency", "precision": 18, "scale": 2},
                {"name": "Birthdate", "type": "date"},
            ]})

        if path == f"{DATA}/sobjects":
            return httpx.Response(200, json={"sobjects": [
                {"name": "Account", "custom": False, "queryable": True},
                {"name": "Invoice__c", "custom": True, "queryable": True},
                {"name": "AccountHistoryShadow", "queryable": False},
            ]})

        if path == "/services/data/":
            return httpx.Response(200, json=[{"version": "58.0"}, {"version": "59.0"}])

        return httpx.Response(404, json=[{"errorCode": "NOT_FOUND", "message": f"No route for {path}"}])


@pytest.fixture
def api():
    return FakeSalesforce()


@pytest.fixture
def connector(api):
    return SalesforceConnector(salesforce_config(objects=["Contact"]), transport=httpx.MockTransport(api))


class TestSalesforceConnector:
    """REST API behaviour behind the connector contract."""

    @pytest.mark.asyncio
    async def test_password_login(self, connector, api):
        """Test the OAuth password flow and bearer header."""
        await connector.connect()

        login = api.requests[0]
        assert login.method == "POST"
        assert b"password=secrettkn" in login.content
        assert connector.is_connected

        await connector.execute_query("SELECT Id FROM Account")
        assert api.requests[-1].headers["Authorization"] == "Bearer session-token"
        assert str(api.requests[-1].url).startswith(INSTANCE)
        await connector.disconnect()

    @pytest.mark.asyncio
    async def test_access_token_skips_login(self, api):
        """Test a supplied access token is used as is."""
        config = ConnectionConfig(
            id="crm",
            source_type=SourceType.SALESFORCE,
            credentials={"access_token": "preissued", "instance_url": INSTANCE, "api_version": "v59.0"},
        )
        async with SalesforceConnector(config, transport=httpx.MockTransport(api)):
            pass

        assert all(r.url.path != "/services/oauth2/token" for r in api.requests)
        assert api.requests[0].headers["Authorization"] == "Bearer preissued"

    @pytest.mark.asyncio
    async def test_query_follows_pages(self, connector):
        """Test paged results are concatenated and attributes stripped."""
        async with connector:
            result = await connector.execute_query("SELECT Id, Name, Owner.Name FROM Account")

        assert result.row_count == 2
        assert result.columns == ["Id", "Name", "Owner"]
        assert result.rows[0] == {"Id": "001A", "Name": "Acme", "Owner": {"Name": "Ann"}}
        assert result.rows[1]["Name"] == "Globex"

    @pytest.mark.asyncio
    async def test_streaming_yields_pages(self, connector):
        """Test streaming yields one chunk per result page."""
        async with connector:
            pages = [page async for page in connector.execute_streaming_query("SELECT Id FROM Account")]
        assert [len(p) for p in pages] == [1, 1]

    @pytest.mark.asyncio
    async def test_bad_login(self, connector, api):
        """Test rejected credentials surface as an authentication error."""
        api.login_status = 400

        with pytest.raises(AuthenticationError) as exc_info:
            await connector.connect()

        assert "authentication failure" in str(exc_info.value)
        assert connector.status == ConnectionStatus.ERROR

    @pytest.mark.asyncio
    async def test_rate_limit(self, connector, api):
        """Test throttling carries Retry-After as milliseconds."""
        async with connector:
            api.query_status = 429
            with pytest.raises(RateLimitError) as exc_info:
                await connector.execute_query("SELECT Id FROM Account")

        assert exc_info.value.retry_after_ms == 2000
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_expired_session(self, connector, api):
        """Test an invalid session is an authentication error."""
        async with connector:
            api.query_status = 401
            with pytest.raises(AuthenticationError):
                await connector.execute_query("SELECT Id FROM Account")

    @pytest.mark.asyncio
    async def test_describe(self, connector):
        """Test describe maps field types, the Id key and references."""
        async with connector:
            columns = {c.name: c for c in await connector.list_columns("Contact")}
            foreign_keys = await connector.list_foreign_keys()
            tables = await connector.list_tables()
            version = await connector.get_version()

        assert columns["Id"].primary_key
        assert columns["Id"].type == "string"
        assert columns["AccountId"].type == "reference"
        assert columns["AccountId"].foreign_key.table == "Account"
        assert columns["Amount__c"].type == "float"
        assert columns["Birthdate"].type == "datetime"

        assert [(fk.from_table, fk.from_column, fk.to_table, fk.to_column) for fk in foreign_keys] == [
            ("Contact", "AccountId", "Account", "Id")
        ]
        assert [(t.name, t.table_type) for t in tables] == [("Account", "standard"), ("Invoice__c", "custom")]
        assert version == "59.0"

    def test_missing_credentials(self):
        """Test a username alone is not enough."""
        config = ConnectionConfig(id="crm", source_type=SourceType.SALESFORCE, credentials={"username": "x"})
        with pytest.raises(ConfigurationError):
            SalesforceConnector.validate_config(config)


class TestSOQLRendering:
    """Parameter substitution into SOQL."""

    def test_positional_parameters(self):
        """Test $n placeholders become escaped literals."""
        soql = render_soql(
            "SELECT Id FROM Account WHERE Name = $1 AND CreatedDate > $2 AND IsDeleted = $3",
            ["O'Brien", datetime(2024, 1, 1, 9, 30), False],
        )
        assert soql == (
            "SELECT Id FROM Account WHERE Name = 'O\\'Brien' "
            "AND CreatedDate > 2024-01-01T09:30:00Z AND IsDeleted = false"
        )

    def test_named_parameters(self):
        """Test :name placeholders use the mapping and leave unknown names alone."""
        soql = render_soql("SELECT Id FROM Contact WHERE Email = :email AND Id = :other", {"email": "a@b.co"})
        assert soql == "SELECT Id FROM Contact WHERE Email = 'a@b.co' AND Id = :other"

    def test_escape_values(self):
        """Test literal rendering of scalars."""
        assert escape_soql_value(None) == "null"
        assert escape_soql_value(42) == "42"
        assert escape_soql_value("back\\slash") == "'back\\\\slash'"
