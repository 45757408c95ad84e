"""Interactive terminal sessions."""

from .proxy import SessionProxy
from .registry import RWLock, SessionRegistry
from .session import ClientConnection, Session

__all__ = ["ClientConnection", "RWLock", "Session", "SessionProxy", "SessionRegistry"]
