"""phonebackend - serve a local JSON store through a relay routing service."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("phone-backend")
except PackageNotFoundError:
    __version__ = "0+local"
from phonebackend.agent import PhoneBackendAgent, build_transport
from phonebackend.config import PhoneBackendConfig, load_credentials, save_credentials
from phonebackend.dispatcher import IdGenerator, RequestDispatcher
from phonebackend.exceptions import (
    AuthenticationError,
    ConfigError,
    InvalidBodyError,
    InvalidPathError,
    PathConflictError,
    PhoneBackendError,
    StoreError,
    TransportError,
)
from phonebackend.models import ApiRequest, ApiResponse, Credentials, DataSnapshot
from phonebackend.session import ConnectionSession, SessionState
from phonebackend.store import CoercionPolicy, PathStore

__all__ = [
    "__version__",
    "ApiRequest",
    "ApiResponse",
    "AuthenticationError",
    "CoercionPolicy",
    "ConfigError",
    "ConnectionSession",
    "Credentials",
    "DataSnapshot",
    "IdGenerator",
    "InvalidBodyError",
    "InvalidPathError",
    "PathConflictError",
    "PathStore",
    "PhoneBackendAgent",
    "PhoneBackendConfig",
    "PhoneBackendError",
    "RequestDispatcher",
    "SessionState",
    "StoreError",
    "TransportError",
    "build_transport",
    "load_credentials",
    "save_credentials",
]
