"""Bearer-token share links for snippets.

The service and the HTTP routers live in ``service``, ``routes`` and
``access``; they are imported from there so that the store protocols can
depend on the model without pulling in the service.
"""

from .audit import (
    InMemoryShareAuditEmitter,
    LoggingShareAuditEmitter,
    ShareAuditEmitter,
    ShareAuditEvent,
)
from .credentials import CredentialVerifier, PasswordVerifier
from .errors import (
    ErrorDisclosure,
    InvalidShareArgument,
    ShareDenied,
    ShareError,
    ShareForbidden,
    ShareNotFound,
    SharePasswordRequired,
    ShareServiceUnavailable,
    ShareThrottled,
    share_error_response,
)
from .ledger import AccessLedger, AccessLogFilter, Page, ShareStats, compute_share_stats
from .model import (
    AccessChannel,
    AccessLogEntry,
    AccessOutcome,
    FailureReason,
    Permission,
    ShareLink,
)
from .policy import AccessDecision, DecisionKind, evaluate
from .rate_limit import (
    InMemoryRateLimitStore,
    RateLimiter,
    RedisRateLimitStore,
)
from .tokens import generate_share_token, hash_token, redact_token

__all__ = [
    'AccessChannel',
    'AccessDecision',
    'AccessLedger',
    'AccessLogEntry',
    'AccessLogFilter',
    'AccessOutcome',
    'CredentialVerifier',
    'DecisionKind',
    'ErrorDisclosure',
    'FailureReason',
    'InMemoryRateLimitStore',
    'InMemoryShareAuditEmitter',
    'InvalidShareArgument',
    'LoggingShareAuditEmitter',
    'Page',
    'PasswordVerifier',
    'Permission',
    'RateLimiter',
    'RedisRateLimitStore',
    'ShareAuditEmitter',
    'ShareAuditEvent',
    'ShareDenied',
    'ShareError',
    'ShareForbidden',
    'ShareLink',
    'ShareNotFound',
    'SharePasswordRequired',
    'ShareServiceUnavailable',
    'ShareStats',
    'ShareThrottled',
    'compute_share_stats',
    'evaluate',
    'generate_share_token',
    'hash_token',
    'redact_token',
    'share_error_response',
]
