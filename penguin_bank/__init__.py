"""Penguin Bank MCP server: demo banking tools over JSON-RPC on HTTP."""

__version__ = "1.0.0"

from .config import Settings
from .datastore import BankDataStore, DataStoreError, InMemoryDataStore, PostgresDataStore, create_datastore
from .dispatcher import ProtocolDispatcher, RequestContext, RpcMethod
from .logger import StructuredLogger, configure_logging
from .metrics import MetricsCollector
from .sessions import Session, SessionRegistry
from .tools import BankingError, BankingTools, ToolName

__all__ = [
    "__version__",
    "BankDataStore",
    "BankingError",
    "BankingTools",
    "DataStoreError",
    "InMemoryDataStore",
    "MetricsCollector",
    "PostgresDataStore",
    "ProtocolDispatcher",
    "RequestContext",
    "RpcMethod",
    "Session",
    "SessionRegistry",
    "Settings",
    "StructuredLogger",
    "ToolName",
    "configure_logging",
    "create_datastore",
]
