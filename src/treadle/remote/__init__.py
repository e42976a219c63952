"""Remote control over newline-delimited JSON."""

from treadle.remote.client import RemoteAuthError, RemoteClient, RemoteRequestError
from treadle.remote.handler import RemoteSession
from treadle.remote.server import RemoteServer, ServerAddress
from treadle.remote.token import RemoteToken, RemoteTokenStore

__all__ = [
    "RemoteAuthError",
    "RemoteClient",
    "RemoteRequestError",
    "RemoteServer",
    "RemoteSession",
    "RemoteToken",
    "RemoteTokenStore",
    "ServerAddress",
]
