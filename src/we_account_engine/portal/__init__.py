from .browser import BrowserManager
from .client import PortalClient
from .selectors import PortalSelectors
from .session_store import SessionStore

__all__ = ["BrowserManager", "PortalClient", "PortalSelectors", "SessionStore"]
