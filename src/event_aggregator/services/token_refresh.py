"""
Page token expiry tracking and refresh.

Refresh calls to the Graph API are capped per page by a token bucket
limiter. Failures are collected per page so one expired credential does
not stop the remaining pages from being refreshed.
"""
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Protocol

from event_aggregator.core.config import TokenRefreshConfig
from event_aggregator.core.errors import CredentialExpiredError, GraphAPIError
from event_aggregator.core.rate_limiter import TokenBucketRateLimiter
from event_aggregator.core.telemetry import ServiceLogger, StdlibServiceLogger
from event_aggregator.datasources.facebook import FacebookGraphClient

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 60 * 60 * 24


class TokenStatus(Enum):
    EXPIRED = "expired"
    EXPIRING = "expiring"
    VALID = "valid"


def calculate_days_until_expiry(expires_at: datetime, now: Optional[datetime] = None) -> int:
    """Whole days until expires_at, rounded up; negative once expired."""
    now = now or datetime.now(timezone.utc)
    return math.ceil((expires_at - now).total_seconds() / SECONDS_PER_DAY)


def is_token_expiring(days_until_expiry: int, warning_days: int = 7) -> bool:
    return days_until_expiry <= warning_days


def get_token_status(days_until_expiry: int, warning_days: int = 7) -> TokenStatus:
    if days_until_expiry < 0:
        return TokenStatus.EXPIRED
    if is_token_expiring(days_until_expiry, warning_days):
        return TokenStatus.EXPIRING
    return TokenStatus.VALID


def calculate_expiration_date(
    expires_in_days: int = 60,
    now: Optional[datetime] = None,
) -> datetime:
    now = now or datetime.now(timezone.utc)
    return now + timedelta(days=expires_in_days)


@dataclass
class PageToken:
    """A stored page token. expires_at None means the expiry is unknown."""

    page_id: str
    access_token: str
    expires_at: Optional[datetime] = None


class TokenStore(Protocol):
    async def save_page_token(
        self, page_id: str, access_token: str, expires_at: datetime
    ) -> None:
        ...


@dataclass
class RefreshResult:
    page_id: str
    status: str  # refreshed, skipped or rate_limited
    expires_at: Optional[datetime] = None


@dataclass
class RefreshFailure:
    page_id: str
    error: str
    kind: Optional[str] = None
    requires_reauth: bool = False


@dataclass
class RefreshReport:
    results: list[RefreshResult] = field(default_factory=list)
    errors: list[RefreshFailure] = field(default_factory=list)

    @property
    def refreshed(self) -> list[str]:
        return [r.page_id for r in self.results if r.status == "refreshed"]

    def to_dict(self) -> dict[str, Any]:
        return {
            "refreshed": len(self.refreshed),
            "results": [
                {
                    "pageId": r.page_id,
                    "status": r.status,
                    "expiresAt": r.expires_at.isoformat() if r.expires_at else None,
                }
                for r in self.results
            ],
            "errors": [
                {
                    "pageId": e.page_id,
                    "error": e.error,
                    "kind": e.kind,
                    "requiresReauth": e.requires_reauth,
                }
                for e in self.errors
            ],
        }


class TokenRefresher:
    """
    Refreshes expiring page tokens through the Graph API.

    Args:
        client: Graph API client configured with app id and secret
        rate_limiter: Token bucket keyed by page id
        token_store: Persists refreshed tokens
        config: Expiry policy
        service_logger: Logger capability
        clock: Returns the current aware datetime
    """

    def __init__(
        self,
        client: FacebookGraphClient,
        rate_limiter: TokenBucketRateLimiter,
        token_store: TokenStore,
        config: Optional[TokenRefreshConfig] = None,
        service_logger: Optional[ServiceLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.client = client
        self.rate_limiter = rate_limiter
        self.token_store = token_store
        self.config = config or TokenRefreshConfig()
        self.log = service_logger or StdlibServiceLogger(stdlib_logger=logger)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def status_of(self, page: PageToken, now: datetime) -> TokenStatus:
        if page.expires_at is None:
            return TokenStatus.EXPIRING
        days = calculate_days_until_expiry(page.expires_at, now)
        return get_token_status(days, self.config.warning_days)

    async def refresh_page(self, page: PageToken, now: datetime) -> RefreshResult:
        """Exchange and persist one page's token. Errors propagate."""
        exchanged = await self.client.exchange_for_long_lived_token(page.access_token)
        if exchanged.expires_in:
            expires_at = now + timedelta(seconds=exchanged.expires_in)
        else:
            expires_at = calculate_expiration_date(self.config.default_expires_days, now)

        await self.token_store.save_page_token(page.page_id, exchanged.access_token, expires_at)
        self.log.info(
            "Refreshed page token",
            {"pageId": page.page_id, "expiresAt": expires_at.isoformat()},
        )
        return RefreshResult(page_id=page.page_id, status="refreshed", expires_at=expires_at)

    async def refresh_pages(self, pages: Iterable[PageToken]) -> RefreshReport:
        """Refresh every expiring token, collecting per-page results and errors."""
        report = RefreshReport()
        now = self._clock()

        for page in pages:
            status = self.status_of(page, now)

            if status == TokenStatus.VALID:
                report.results.append(
                    RefreshResult(page_id=page.page_id, status="skipped", expires_at=page.expires_at)
                )
                continue

            if status == TokenStatus.EXPIRED:
                self.log.warn("Page token already expired", {"pageId": page.page_id})
                report.errors.append(
                    RefreshFailure(
                        page_id=page.page_id,
                        error="Token expired",
                        kind="credential_expired",
                        requires_reauth=True,
                    )
                )
                continue

            if not self.rate_limiter.check(page.page_id):
                self.log.debug("Token refresh rate limited", {"pageId": page.page_id})
                report.results.append(RefreshResult(page_id=page.page_id, status="rate_limited"))
                continue

            try:
                report.results.append(await self.refresh_page(page, now))
            except CredentialExpiredError as exc:
                self.log.warn(
                    "Page token rejected during refresh",
                    {"pageId": page.page_id, "code": exc.code},
                )
                report.errors.append(
                    RefreshFailure(
                        page_id=page.page_id,
                        error=exc.message,
                        kind=exc.kind.value,
                        requires_reauth=True,
                    )
                )
            except GraphAPIError as exc:
                self.log.error("Token refresh failed", exc, {"pageId": page.page_id})
                report.errors.append(
                    RefreshFailure(page_id=page.page_id, error=exc.message, kind=exc.kind.value)
                )
            except Exception as exc:
                self.log.error("Unexpected error refreshing page token", exc, {"pageId": page.page_id})
                report.errors.append(RefreshFailure(page_id=page.page_id, error=str(exc)))

        self.log.info(
            "Token refresh complete",
            {"refreshed": len(report.refreshed), "errors": len(report.errors)},
        )
        return report
