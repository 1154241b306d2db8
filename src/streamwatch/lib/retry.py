"""
Retry policy engine with per-platform failure classification.

Every external call made by the monitor (platform APIs, subscription hubs)
goes through RetryPolicyEngine. A classification table maps each failure to
one of four kinds; only transient and rate-limited failures are retried,
with exponential backoff capped per platform.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import (
    Any, Awaitable, Callable, Dict, FrozenSet, Generic, Optional, Tuple, TypeVar
)

import aiohttp

from .errors import (
    ApiResponseError, ErrorTracker, NetworkError, NoCapacityError, PollerStateError,
    RateLimitError, SubscriptionError
)

logger = logging.getLogger(__name__)

T = TypeVar('T')


class FailureKind(str, Enum):
    """Failure classes understood by the retry engine."""
    TRANSIENT = "transient"         # Network errors, 5xx, timeouts
    RATE_LIMITED = "rate_limited"   # 429 or upstream quota signal
    PERMANENT = "permanent"         # Rejected request, never retried
    UNEXPECTED = "unexpected"       # Not covered by the platform table


@dataclass(frozen=True)
class FailureClassification:
    """Outcome of classifying one failure."""
    kind: FailureKind
    retry_after: Optional[float] = None

    @property
    def is_retryable(self) -> bool:
        return self.kind in (FailureKind.TRANSIENT, FailureKind.RATE_LIMITED)


@dataclass
class RetryConfig:
    """Configuration for retry logic."""
    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 60.0
    max_retry_after: float = 60.0
    jitter: bool = False

    def calculate_delay(self, retry_index: int) -> float:
        """Backoff before retry number ``retry_index`` (0 for the first retry)."""
        delay = min(self.base_delay * (2 ** retry_index), self.max_delay)

        if self.jitter:
            jitter_range = delay * 0.1
            delay += random.uniform(-jitter_range, jitter_range)

        return max(0.0, delay)


@dataclass
class RetryContext:
    """Ephemeral state of one retried call."""
    operation: str
    attempt: int = 0
    classification: Optional[FailureClassification] = None
    next_delay: Optional[float] = None


@dataclass
class CallResult(Generic[T]):
    """Typed result of a call run through the engine."""
    operation: str
    value: Optional[T] = None
    error: Optional[BaseException] = None
    attempts: int = 0
    classification: Optional[FailureClassification] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _parse_retry_after(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    return seconds if seconds > 0 else None


@dataclass(frozen=True)
class ClassificationTable:
    """
    HTTP status and exception table for one platform.

    Reason rules match substrings of an ApiResponseError reason before the
    status code is consulted. ``lenient`` tables retry every HTTP error.
    """
    platform: str
    transient_statuses: FrozenSet[int] = frozenset({500, 502, 503, 504})
    permanent_statuses: FrozenSet[int] = frozenset()
    rate_limited_statuses: FrozenSet[int] = frozenset({429})
    other_4xx_permanent: bool = True
    lenient: bool = False
    reason_rules: Tuple[Tuple[str, FailureKind, Optional[float]], ...] = ()

    def classify(self, error: BaseException) -> FailureClassification:
        """Map an exception onto a failure kind."""
        if isinstance(error, (NoCapacityError, PollerStateError, SubscriptionError)):
            return FailureClassification(FailureKind.PERMANENT)

        if isinstance(error, RateLimitError):
            return FailureClassification(FailureKind.RATE_LIMITED, error.retry_after)

        if isinstance(error, ApiResponseError):
            return self._classify_status(error.status, error.reason, error.retry_after)

        if isinstance(error, aiohttp.ClientResponseError):
            headers = error.headers or {}
            return self._classify_status(
                error.status, None, _parse_retry_after(headers.get('Retry-After'))
            )

        if isinstance(error, (NetworkError, aiohttp.ClientConnectionError,
                              aiohttp.ServerTimeoutError, asyncio.TimeoutError,
                              ConnectionError)):
            return FailureClassification(FailureKind.TRANSIENT)

        if self.lenient and isinstance(error, (aiohttp.ClientError, PermissionError)):
            return FailureClassification(FailureKind.TRANSIENT)

        return FailureClassification(FailureKind.UNEXPECTED)

    def _classify_status(
        self,
        status: int,
        reason: Optional[str],
        retry_after: Optional[float]
    ) -> FailureClassification:
        if reason:
            lowered = reason.lower()
            for needle, kind, hint in self.reason_rules:
                if needle in lowered:
                    return FailureClassification(kind, retry_after or hint)

        if status in self.rate_limited_statuses:
            return FailureClassification(FailureKind.RATE_LIMITED, retry_after)

        if self.lenient:
            return FailureClassification(FailureKind.TRANSIENT)

        if status in self.transient_statuses:
            return FailureClassification(FailureKind.TRANSIENT)

        if status in self.permanent_statuses:
            return FailureClassification(FailureKind.PERMANENT)

        if self.other_4xx_permanent and 400 <= status < 500:
            return FailureClassification(FailureKind.PERMANENT)

        return FailureClassification(FailureKind.UNEXPECTED)


YOUTUBE_TABLE = ClassificationTable(
    platform="youtube",
    transient_statuses=frozenset({500, 502, 503, 504}),
    permanent_statuses=frozenset({400, 403, 404}),
    other_4xx_permanent=False,
    reason_rules=(
        ("quota", FailureKind.RATE_LIMITED, None),
        ("rate", FailureKind.RATE_LIMITED, 30.0),
    ),
)

TWITCH_TABLE = ClassificationTable(
    platform="twitch",
    transient_statuses=frozenset({500, 502, 503}),
)

DEFAULT_TABLE = ClassificationTable(
    platform="default",
    transient_statuses=frozenset({408, 500, 502, 503, 504}),
)

PLATFORM_TABLES: Dict[str, ClassificationTable] = {
    table.platform: table
    for table in (YOUTUBE_TABLE, TWITCH_TABLE)
}


def get_classification_table(platform: str) -> ClassificationTable:
    """Classification table for a platform, falling back to the default."""
    return PLATFORM_TABLES.get(platform.lower(), DEFAULT_TABLE)


Classifier = Callable[[BaseException], FailureClassification]


class RetryPolicyEngine:
    """
    Runs external calls with classification-driven retries.

    Terminal failures are counted per operation in an ErrorTracker so the
    owning poller can report them in its health snapshot.
    """

    def __init__(
        self,
        platform: str,
        config: Optional[RetryConfig] = None,
        table: Optional[ClassificationTable] = None,
        error_tracker: Optional[ErrorTracker] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.platform = platform
        self.config = config or RetryConfig()
        self.table = table or get_classification_table(platform)
        self.error_tracker = error_tracker or ErrorTracker()
        self._sleep = sleep

    def classify(self, error: BaseException) -> FailureClassification:
        return self.table.classify(error)

    def _delay_for(self, classification: FailureClassification, retry_index: int) -> float:
        if classification.kind == FailureKind.RATE_LIMITED and classification.retry_after:
            return min(classification.retry_after, self.config.max_retry_after)
        return self.config.calculate_delay(retry_index)

    async def execute(
        self,
        operation_name: str,
        call: Callable[[], Awaitable[T]],
        classify: Optional[Classifier] = None,
        max_attempts: Optional[int] = None,
        context: Optional[RetryContext] = None
    ) -> T:
        """
        Run ``call`` until it succeeds or a terminal failure occurs.

        Transient and rate-limited failures are retried up to
        ``max_attempts`` invocations in total. Permanent and unexpected
        failures propagate after the first invocation. The original
        exception is re-raised on every terminal path.
        """
        classify = classify or self.classify
        attempts = max_attempts or self.config.max_attempts
        ctx = context or RetryContext(operation=operation_name)

        while True:
            ctx.attempt += 1
            try:
                result = await call()
            except Exception as e:
                classification = classify(e)
                ctx.classification = classification

                if not classification.is_retryable:
                    logger.error(
                        f"[{self.platform}] {operation_name} failed with "
                        f"{classification.kind.value} error: {e}"
                    )
                    self.error_tracker.record_failure(operation_name, e)
                    raise

                if ctx.attempt >= attempts:
                    logger.error(
                        f"[{self.platform}] {operation_name} failed after "
                        f"{ctx.attempt} attempts: {e}"
                    )
                    self.error_tracker.record_failure(operation_name, e)
                    raise

                ctx.next_delay = self._delay_for(classification, ctx.attempt - 1)
                logger.warning(
                    f"[{self.platform}] {operation_name} failed on attempt "
                    f"{ctx.attempt}/{attempts} ({classification.kind.value}): {e}. "
                    f"Retrying in {ctx.next_delay:.2f} seconds..."
                )
                await self._sleep(ctx.next_delay)
            else:
                if ctx.attempt > 1:
                    logger.info(
                        f"[{self.platform}] {operation_name} succeeded on attempt {ctx.attempt}"
                    )
                return result

    async def attempt(
        self,
        operation_name: str,
        call: Callable[[], Awaitable[T]],
        classify: Optional[Classifier] = None,
        max_attempts: Optional[int] = None
    ) -> CallResult[T]:
        """Like :meth:`execute` but returns a CallResult instead of raising."""
        ctx = RetryContext(operation=operation_name)
        try:
            value = await self.execute(
                operation_name, call, classify=classify,
                max_attempts=max_attempts, context=ctx
            )
        except Exception as e:
            return CallResult(
                operation=operation_name,
                error=e,
                attempts=ctx.attempt,
                classification=ctx.classification,
            )
        return CallResult(operation=operation_name, value=value, attempts=ctx.attempt)

    def get_error_stats(self) -> Dict[str, Any]:
        """Terminal failure statistics for this platform."""
        return {'platform': self.platform, **self.error_tracker.get_error_stats()}

    def reset_error_stats(self) -> None:
        """Clear failure counters and last-failure timestamps."""
        self.error_tracker.clear_history()
