"""
Channel Dispatcher

Routes a claimed submission to the adapter for its delivery channel and
turns whatever happens (result, exception, timeout) into a DeliveryResult
with a transient/permanent classification.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Protocol

import httpx

from stellarrec.domain.submission import DeliveryChannel, DeliveryResult, FailureKind
from stellarrec.infrastructure.db.models.submission import Submission
from stellarrec.infrastructure.exceptions import ChannelError


logger = logging.getLogger(__name__)


ApplicationContextProvider = Callable[[Submission], Awaitable[Dict[str, Any]]]

# HTTP statuses worth retrying; every other 4xx means the payload or
# credentials will not get better on their own.
TRANSIENT_HTTP_STATUSES = frozenset({408, 425, 429})


class ChannelAdapter(Protocol):
    """
    Transport for one delivery channel.

    Implementations must be idempotent per submission id: the queue
    guarantees at-least-once delivery, not exactly-once.
    """

    async def send(
        self,
        submission: Submission,
        application_context: Dict[str, Any],
    ) -> DeliveryResult:
        ...


class ManualChannelAdapter:
    """
    Hand-off for universities without an integration.

    The submission is recorded as submitted and waits for an operator to
    confirm it out of band.
    """

    async def send(
        self,
        submission: Submission,
        application_context: Dict[str, Any],
    ) -> DeliveryResult:
        logger.info(f"[DISPATCH] Manual delivery requested for {submission.id}")
        return DeliveryResult.success(external_reference=f"manual-{submission.id}")


def classify_exception(exc: BaseException) -> FailureKind:
    """Map an adapter exception to a failure kind."""
    if isinstance(exc, ChannelError):
        return FailureKind(exc.kind)
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status >= 500 or status in TRANSIENT_HTTP_STATUSES:
            return FailureKind.TRANSIENT
        return FailureKind.PERMANENT
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return FailureKind.TRANSIENT
    # Unknown errors are retried; adapters are idempotent
    return FailureKind.TRANSIENT


def describe_exception(exc: BaseException) -> str:
    if isinstance(exc, httpx.HTTPStatusError):
        return f"HTTP {exc.response.status_code} from {exc.request.url}"
    if isinstance(exc, httpx.TimeoutException):
        return f"Timeout contacting channel: {exc}"
    if isinstance(exc, ChannelError):
        return exc.message
    return f"{type(exc).__name__}: {exc}"


class ChannelDispatcher:
    """
    Dispatches submissions to channel adapters with a per-call timeout.

    Never raises for delivery problems; every outcome is a DeliveryResult.
    """

    def __init__(
        self,
        adapters: Optional[Mapping[DeliveryChannel, ChannelAdapter]] = None,
        timeout_seconds: float = 30.0,
        context_provider: Optional[ApplicationContextProvider] = None,
    ):
        self._adapters: Dict[DeliveryChannel, ChannelAdapter] = dict(adapters or {})
        self._timeout = timeout_seconds
        self._context_provider = context_provider

    def register(self, channel: DeliveryChannel, adapter: ChannelAdapter) -> None:
        self._adapters[DeliveryChannel(channel)] = adapter

    @property
    def channels(self) -> list[DeliveryChannel]:
        return list(self._adapters)

    async def _application_context(self, submission: Submission) -> Dict[str, Any]:
        if self._context_provider is None:
            return {
                "application_id": str(submission.application_id),
                "university_id": str(submission.university_id),
            }
        return await self._context_provider(submission)

    async def dispatch(self, submission: Submission) -> DeliveryResult:
        """Attempt one delivery of ``submission`` through its channel."""
        channel = DeliveryChannel(submission.channel)
        adapter = self._adapters.get(channel)
        if adapter is None:
            return DeliveryResult.failure(
                FailureKind.PERMANENT,
                f"No adapter registered for channel '{channel.value}'",
            )

        try:
            context = await self._application_context(submission)
            result = await asyncio.wait_for(
                adapter.send(submission, context),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"[DISPATCH] {channel.value} adapter timed out after {self._timeout}s "
                f"for {submission.id}"
            )
            return DeliveryResult.failure(
                FailureKind.TRANSIENT,
                f"Delivery timed out after {self._timeout:g} seconds",
            )
        except Exception as exc:
            kind = classify_exception(exc)
            logger.warning(
                f"[DISPATCH] {channel.value} delivery failed for {submission.id} "
                f"({kind.value}): {exc}"
            )
            return DeliveryResult.failure(kind, describe_exception(exc))

        if not isinstance(result, DeliveryResult):
            return DeliveryResult.failure(
                FailureKind.PERMANENT,
                f"Adapter for '{channel.value}' returned {type(result).__name__}",
            )
        return result
