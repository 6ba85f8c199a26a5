"""tod test-user sessions and the email-aware authentication flow.

Public API re-exported here for convenience::

    from tod_session import AuthFlowOrchestrator, SessionStore, TestUser
"""

from .auth_flow import EMAIL_AUTH_ARTIFACTS, AuthFlowOrchestrator, basic_auth_header
from .config import AuthFlowConfig
from .errors import (
    SessionError,
    SessionExpiredError,
    SessionNotFoundError,
    SessionStorageError,
)
from .expiry import compute_expiry
from .models import (
    AuthenticationResult,
    AuthFlowState,
    Cookie,
    EmailAccessResult,
    TestUser,
    TestUserAuthConfig,
    UserSession,
)
from .store import SessionStore

__all__ = [
    "EMAIL_AUTH_ARTIFACTS",
    "AuthFlowConfig",
    "AuthFlowOrchestrator",
    "AuthFlowState",
    "AuthenticationResult",
    "Cookie",
    "EmailAccessResult",
    "SessionError",
    "SessionExpiredError",
    "SessionNotFoundError",
    "SessionStorageError",
    "SessionStore",
    "TestUser",
    "TestUserAuthConfig",
    "UserSession",
    "basic_auth_header",
    "compute_expiry",
]
