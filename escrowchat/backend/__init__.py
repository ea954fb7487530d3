"""Backend package for the escrow chat billing engine."""

from .config import BackendSettings, RateTable, load_settings
from .errors import BillingError
from .service import BillingService
from .state import build_session, session_from_state, session_to_state
from .store import InMemorySessionStore, PostgresSessionStore, SessionStore, create_store

__all__ = [
    "BackendSettings",
    "BillingError",
    "BillingService",
    "build_session",
    "create_store",
    "InMemorySessionStore",
    "load_settings",
    "PostgresSessionStore",
    "RateTable",
    "session_from_state",
    "session_to_state",
    "SessionStore",
]
