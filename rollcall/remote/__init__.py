"""Remote backend access.

Provides the PostgREST client for the shared store and the cached session
provider used to authenticate it.
"""

from .client import RemoteStore
from .session import AuthSession, SessionProvider, static_session_provider

__all__ = ["AuthSession", "RemoteStore", "SessionProvider", "static_session_provider"]
