"""
Connector data models.

Source tags, connection configuration and the introspection/query result
types every connector returns.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SourceFamily(str, Enum):
    """Connector families; each owns a retry policy."""
    RDBMS = "rdbms"
    WAREHOUSE = "warehouse"
    SAAS = "saas"


class SourceType(str, Enum):
    """Concrete source systems."""
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    MSSQL = "mssql"
    AZURE_SQL = "azure-sql"
    SQLITE = "sqlite"
    SNOWFLAKE = "snowflake"
    REDSHIFT = "redshift"
    DATABRICKS = "databricks"
    BIGQUERY = "bigquery"
    SALESFORCE = "salesforce"
    XERO = "xero"
    SPENDESK = "spendesk"


class AuthType(str, Enum):
    """Authentication mechanism for a connection."""
    PASSWORD = "password"
    OAUTH2 = "oauth2"
    API_KEY = "api_key"
    SERVICE_ACCOUNT = "service_account"
    IAM = "iam"
    TOKEN = "token"
    KEY_PAIR = "key_pair"


class ConnectionStatus(str, Enum):
    """Connection status enumeration."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class ConnectionConfig(BaseModel):
    """
    Logical connection as supplied by the configuration store.

    The credential bundle is passed straight to the connector for its
    source type; this core never persists or decrypts it.
    """
    model_config = ConfigDict(use_enum_values=False)

    id: str = Field(..., min_length=1)
    source_type: SourceType
    name: str = ""
    credentials: Dict[str, Any] = Field(default_factory=dict)
    auth_type: Optional[AuthType] = None
    enabled: bool = True

    connection_timeout: int = Field(default=30, ge=1)
    query_timeout: Optional[float] = Field(default=None, gt=0)
    pool_size: int = Field(default=5, ge=1)
    max_overflow: int = Field(default=10, ge=0)

    @field_validator("credentials")
    @classmethod
    def _no_blank_keys(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        if any(not str(k).strip() for k in v):
            raise ValueError("credential keys must not be blank")
        return v

    def with_credentials(self, credentials: Dict[str, Any]) -> "ConnectionConfig":
        """Copy with the credential bundle merged over the stored one."""
        merged = {**self.credentials, **credentials}
        return self.model_copy(update={"credentials": merged})


@dataclass(frozen=True)
class TableRef:
    """Identifies a unit of sync/quality/transform work."""
    table: str
    schema: Optional[str] = None
    database: Optional[str] = None

    @classmethod
    def parse(cls, name: str) -> "TableRef":
        """Parse 'table', 'schema.table' or 'database.schema.table'."""
        parts = [p for p in name.split(".") if p]
        if not parts or len(parts) > 3:
            raise ValueError(f"Invalid table reference: {name!r}")
        if len(parts) == 1:
            return cls(table=parts[0])
        if len(parts) == 2:
            return cls(table=parts[1], schema=parts[0])
        return cls(table=parts[2], schema=parts[1], database=parts[0])

    @property
    def qualified_name(self) -> str:
        return ".".join(p for p in (self.database, self.schema, self.table) if p)

    @property
    def key(self) -> str:
        """Checkpoint key: schema-qualified table name."""
        return ".".join(p for p in (self.schema, self.table) if p)

    def __str__(self) -> str:
        return self.qualified_name


@dataclass
class ForeignKeyRef:
    """Target of a foreign key column."""
    table: str
    column: str
    schema: Optional[str] = None


@dataclass
class ColumnInfo:
    """Column metadata produced by schema introspection."""
    name: str
    type: str
    nullable: bool = True
    primary_key: bool = False
    foreign_key: Optional[ForeignKeyRef] = None
    max_length: Optional[int] = None
    precision: Optional[int] = None
    scale: Optional[int] = None
    native_type: Optional[str] = None
    default: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DatabaseInfo:
    name: str


@dataclass
class SchemaInfo:
    name: str
    database: Optional[str] = None


@dataclass
class TableInfo:
    name: str
    schema: Optional[str] = None
    database: Optional[str] = None
    table_type: str = "table"
    row_count: Optional[int] = None

    @property
    def ref(self) -> TableRef:
        return TableRef(table=self.name, schema=self.schema, database=self.database)


@dataclass
class ForeignKeyInfo:
    """A declared foreign key between two tables."""
    constraint_name: Optional[str]
    from_table: str
    from_column: str
    to_table: str
    to_column: str
    from_schema: Optional[str] = None
    to_schema: Optional[str] = None


@dataclass
class QueryResult:
    """Transient result of a query."""
    columns: List[str]
    rows: List[Dict[str, Any]]
    row_count: int = 0
    execution_time_ms: float = 0.0

    def __post_init__(self):
        if not self.row_count:
            self.row_count = len(self.rows)

    def scalar(self) -> Any:
        """First column of the first row, or None."""
        if not self.rows or not self.columns:
            return None
        return self.rows[0].get(self.columns[0])


@dataclass
class ConnectionTestResult:
    success: bool
    message: str
    latency_ms: float = 0.0
    version: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
