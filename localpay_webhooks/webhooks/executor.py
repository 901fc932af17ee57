"""Single-attempt HTTP delivery of a signed event.

The executor never retries and never raises for delivery failures: every
outcome, including transport errors, is returned as a DeliveryOutcome.
"""

import asyncio
import time

import httpx
import structlog

from localpay_webhooks.webhooks.events import WEBHOOK_API_VERSION, EventEnvelope
from localpay_webhooks.webhooks.models import DeliveryOutcome, WebhookRegistration
from localpay_webhooks.webhooks.security import create_signature_headers

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_CONCURRENT_DELIVERIES = 8
DEFAULT_USER_AGENT = f"LocalPay-Webhook/{WEBHOOK_API_VERSION}"


class DeliveryExecutor:
    """Performs one POST of a signed payload to one registration.

    Features:
    - Signs the exact bytes that are transmitted
    - Hard per-attempt deadline covering connect, send and read
    - Redirects are never followed
    - Outbound concurrency bounded by a semaphore held only during the request
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_concurrent_deliveries: int = DEFAULT_MAX_CONCURRENT_DELIVERIES,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        """Initialize the executor.

        Args:
            client: HTTP client to use (one is created and owned if not provided).
            timeout_seconds: Hard timeout for one attempt.
            max_concurrent_deliveries: Max requests in flight at once.
            user_agent: Client identifier header value.
        """
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            follow_redirects=False,
        )
        self._timeout = timeout_seconds
        self._user_agent = user_agent
        self._semaphore = asyncio.Semaphore(max_concurrent_deliveries)
        self._logger = logger.bind(component="delivery_executor")

    async def attempt(
        self,
        registration: WebhookRegistration,
        envelope: EventEnvelope,
        body: bytes | None = None,
    ) -> DeliveryOutcome:
        """Make a single delivery attempt.

        Args:
            registration: Target registration.
            envelope: Event being delivered.
            body: Pre-serialized envelope bytes (serialized here if omitted).

        Returns:
            Outcome of the attempt.
        """
        payload = body if body is not None else envelope.to_bytes()

        headers = {
            "Content-Type": "application/json",
            "User-Agent": self._user_agent,
            **create_signature_headers(
                payload,
                registration.secret,
                event_id=envelope.id,
                event_type=envelope.event.value,
            ),
        }
        url = str(registration.url)

        self._logger.debug(
            "attempting_delivery",
            registration_id=registration.id,
            event_id=envelope.id,
            url=url,
        )

        async with self._semaphore:
            start = time.monotonic()
            try:
                async with asyncio.timeout(self._timeout):
                    response = await self._client.post(
                        url,
                        content=payload,
                        headers=headers,
                        follow_redirects=False,
                    )
            except (TimeoutError, httpx.TimeoutException):
                self._logger.warning(
                    "delivery_timeout",
                    registration_id=registration.id,
                    event_id=envelope.id,
                    timeout=self._timeout,
                )
                return DeliveryOutcome.failed(
                    f"Request timeout after {self._timeout:g}s",
                    _elapsed_ms(start),
                )
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                error = str(e) or type(e).__name__
                self._logger.warning(
                    "delivery_transport_error",
                    registration_id=registration.id,
                    event_id=envelope.id,
                    error=error,
                )
                return DeliveryOutcome.failed(error, _elapsed_ms(start))
            except Exception as e:
                self._logger.warning(
                    "delivery_unexpected_error",
                    registration_id=registration.id,
                    event_id=envelope.id,
                    error=str(e),
                )
                return DeliveryOutcome.failed(str(e) or type(e).__name__, _elapsed_ms(start))

        duration_ms = _elapsed_ms(start)

        if response.is_success:
            self._logger.info(
                "delivery_success",
                registration_id=registration.id,
                event_id=envelope.id,
                status_code=response.status_code,
                duration_ms=duration_ms,
            )
            return DeliveryOutcome.succeeded(response.status_code, duration_ms)

        # Includes 3xx: redirects are treated as failures
        self._logger.warning(
            "delivery_non_success_response",
            registration_id=registration.id,
            event_id=envelope.id,
            status_code=response.status_code,
        )
        return DeliveryOutcome.failed(
            f"HTTP {response.status_code}",
            duration_ms,
            status_code=response.status_code,
        )

    async def aclose(self) -> None:
        """Close the HTTP client if this executor created it."""
        if self._owns_client:
            await self._client.aclose()


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
