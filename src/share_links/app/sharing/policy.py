"""Access decision for a share link.

The decision is a pure function of the link state, the clock and the
presented password. It is expressed as an explicit, ordered tuple of
rules evaluated first-match-wins, so precedence is readable in one place
and every rule can be tested on its own:

  1. revoked           -> Denied(revoked)
  2. expired           -> Denied(expired)      (now >= expires_at, no grace)
  3. limit reached     -> Denied(limit_reached)
  4. password missing  -> PasswordRequired     (retry branch, not an error)
  5. password wrong    -> Denied(bad_password)
  6. otherwise         -> Allow(effective permission)

Only Allow leads to the atomic grant; every other decision is logged and
returned to the caller.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable

from .credentials import CredentialVerifier
from .model import FailureReason, Permission, ShareLink


class DecisionKind(str, Enum):
    ALLOW = 'allow'
    PASSWORD_REQUIRED = 'password_required'
    DENIED = 'denied'


@dataclass(frozen=True, slots=True)
class AccessDecision:
    kind: DecisionKind
    reason: FailureReason | None = None
    permission: Permission | None = None

    @classmethod
    def allow(cls, permission: Permission) -> AccessDecision:
        return cls(DecisionKind.ALLOW, permission=permission)

    @classmethod
    def password_required(cls) -> AccessDecision:
        return cls(DecisionKind.PASSWORD_REQUIRED, reason=FailureReason.PASSWORD_REQUIRED)

    @classmethod
    def denied(cls, reason: FailureReason) -> AccessDecision:
        return cls(DecisionKind.DENIED, reason=reason)

    @property
    def is_allowed(self) -> bool:
        return self.kind is DecisionKind.ALLOW


@dataclass(frozen=True, slots=True)
class AccessAttempt:
    """Inputs a rule may look at besides the link itself."""

    now: datetime
    provided_password: str | None
    verifier: CredentialVerifier | None = None


@dataclass(frozen=True, slots=True)
class PolicyRule:
    name: str
    applies: Callable[[ShareLink, AccessAttempt], bool]
    decision: AccessDecision


def _is_revoked(link: ShareLink, attempt: AccessAttempt) -> bool:
    return link.is_revoked


def _is_expired(link: ShareLink, attempt: AccessAttempt) -> bool:
    return link.expires_at is not None and attempt.now >= link.expires_at


def _is_limit_reached(link: ShareLink, attempt: AccessAttempt) -> bool:
    return link.is_limit_reached


def _is_password_missing(link: ShareLink, attempt: AccessAttempt) -> bool:
    return link.password_hash is not None and attempt.provided_password is None


def _is_password_wrong(link: ShareLink, attempt: AccessAttempt) -> bool:
    if link.password_hash is None:
        return False
    # No verifier means nothing can vouch for the password: fail closed.
    if attempt.verifier is None or attempt.provided_password is None:
        return True
    return not attempt.verifier.verify(link.password_hash, attempt.provided_password)


REVOKED_RULE = PolicyRule('revoked', _is_revoked, AccessDecision.denied(FailureReason.REVOKED))
EXPIRED_RULE = PolicyRule('expired', _is_expired, AccessDecision.denied(FailureReason.EXPIRED))
LIMIT_RULE = PolicyRule(
    'limit_reached', _is_limit_reached, AccessDecision.denied(FailureReason.LIMIT_REACHED),
)
PASSWORD_REQUIRED_RULE = PolicyRule(
    'password_required', _is_password_missing, AccessDecision.password_required(),
)
BAD_PASSWORD_RULE = PolicyRule(
    'bad_password', _is_password_wrong, AccessDecision.denied(FailureReason.BAD_PASSWORD),
)

# Link-state rules only; these never touch the password.
STATUS_RULES: tuple[PolicyRule, ...] = (REVOKED_RULE, EXPIRED_RULE, LIMIT_RULE)

DEFAULT_RULES: tuple[PolicyRule, ...] = (
    *STATUS_RULES,
    PASSWORD_REQUIRED_RULE,
    BAD_PASSWORD_RULE,
)


def evaluate(
    link: ShareLink,
    now: datetime,
    provided_password: str | None = None,
    verifier: CredentialVerifier | None = None,
    *,
    rules: tuple[PolicyRule, ...] = DEFAULT_RULES,
) -> AccessDecision:
    """Return the first matching rule's decision, or Allow."""
    attempt = AccessAttempt(now=now, provided_password=provided_password, verifier=verifier)
    for rule in rules:
        if rule.applies(link, attempt):
            return rule.decision
    return AccessDecision.allow(link.permission.effective())


def status_denial(link: ShareLink, now: datetime) -> FailureReason | None:
    """Reason the link itself refuses grants right now, if any."""
    decision = evaluate(link, now, rules=STATUS_RULES)
    return decision.reason if not decision.is_allowed else None
