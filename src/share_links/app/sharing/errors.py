"""Share-link error taxonomy and its HTTP mapping.

Every failure the share service reports is a ``ShareError`` subclass.
``share_error_response`` is the only place those errors become HTTP
responses, so the disclosure policy is applied uniformly:

  InvalidShareArgument     400  field-level errors
  SharePasswordRequired    401  retry with a password
  ShareForbidden           403  generic message
  ShareDenied              410  expired / revoked
                           403  limit_reached / bad_password
  ShareNotFound            404
  ShareThrottled           429  Retry-After
  ShareServiceUnavailable  503  Retry-After

With ``ErrorDisclosure.UNIFORM`` every ``ShareDenied`` is rendered as the
``ShareNotFound`` body. The reason is still recorded in the access ledger.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum

from fastapi.responses import JSONResponse

from .model import FailureReason


class ErrorDisclosure(str, Enum):
    DISCLOSE = 'disclose'
    UNIFORM = 'uniform'


@dataclass(frozen=True, slots=True)
class FieldError:
    field: str
    message: str

    def to_dict(self) -> dict:
        return {'field': self.field, 'message': self.message}


class ShareError(Exception):
    """Base class for client-visible share failures."""

    status_code = 500
    error = 'share_error'
    default_detail = 'Share operation failed.'

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)

    def to_body(self) -> dict:
        return {'error': self.error, 'detail': self.detail}

    def headers(self) -> dict[str, str] | None:
        return None


class InvalidShareArgument(ShareError):
    status_code = 400
    error = 'invalid_argument'
    default_detail = 'Invalid share link request.'

    def __init__(self, errors: list[FieldError], detail: str | None = None) -> None:
        self.errors = list(errors)
        super().__init__(detail)

    @classmethod
    def single(cls, field: str, message: str) -> InvalidShareArgument:
        return cls([FieldError(field, message)])

    def to_body(self) -> dict:
        body = super().to_body()
        body['errors'] = [e.to_dict() for e in self.errors]
        return body


class ShareForbidden(ShareError):
    status_code = 403
    error = 'forbidden'
    default_detail = 'Not permitted to manage this share link.'


class ShareNotFound(ShareError):
    status_code = 404
    error = 'share_not_found'
    default_detail = 'Share link not found.'


class SharePasswordRequired(ShareError):
    status_code = 401
    error = 'password_required'
    default_detail = 'This share link requires a password.'


_DENIED_DETAIL = {
    FailureReason.EXPIRED: 'This share link has expired.',
    FailureReason.REVOKED: 'This share link has been revoked.',
    FailureReason.LIMIT_REACHED: 'This share link has reached its access limit.',
    FailureReason.BAD_PASSWORD: 'Incorrect password.',
}

_GONE_REASONS = frozenset({FailureReason.EXPIRED, FailureReason.REVOKED})


class ShareDenied(ShareError):
    error = 'share_denied'
    default_detail = 'Access to this share link was denied.'

    def __init__(self, reason: FailureReason) -> None:
        self.reason = reason
        super().__init__(_DENIED_DETAIL.get(reason))

    @property
    def status_code(self) -> int:  # type: ignore[override]
        return 410 if self.reason in _GONE_REASONS else 403

    def to_body(self) -> dict:
        body = super().to_body()
        body['reason'] = self.reason.value
        return body


def _retry_after_header(seconds: float) -> dict[str, str]:
    return {'Retry-After': str(max(int(math.ceil(seconds)), 1))}


class ShareThrottled(ShareError):
    status_code = 429
    error = 'rate_limited'
    default_detail = 'Too many attempts. Try again later.'

    def __init__(self, retry_after: float) -> None:
        self.retry_after = retry_after
        super().__init__()

    def to_body(self) -> dict:
        body = super().to_body()
        body['retry_after'] = max(int(math.ceil(self.retry_after)), 1)
        return body

    def headers(self) -> dict[str, str]:
        return _retry_after_header(self.retry_after)


class ShareServiceUnavailable(ShareError):
    status_code = 503
    error = 'service_unavailable'
    default_detail = 'Share storage is temporarily unavailable.'

    def __init__(self, detail: str | None = None, retry_after: float = 1.0) -> None:
        self.retry_after = retry_after
        super().__init__(detail)

    def headers(self) -> dict[str, str]:
        return _retry_after_header(self.retry_after)


def share_error_response(
    exc: ShareError,
    disclosure: ErrorDisclosure = ErrorDisclosure.DISCLOSE,
) -> JSONResponse:
    """Render a share error as the client-facing JSON response."""
    if isinstance(exc, ShareDenied) and disclosure is ErrorDisclosure.UNIFORM:
        exc = ShareNotFound()
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_body(),
        headers=exc.headers(),
    )
