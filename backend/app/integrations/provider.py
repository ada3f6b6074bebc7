"""Payment provider integration: payments, preapprovals and authorized payments.

Thin authenticated wrapper over the provider REST API. No business logic:
responses are validated into typed snapshots and HTTP failures are mapped onto
the reconciler error taxonomy.

- 404                    -> EntityNotFoundError (never retried)
- 429, 5xx, timeouts     -> TransientProviderError (retried here with backoff)
- any other 4xx          -> ProviderRequestError
"""

from typing import Any

import httpx
import structlog
from pydantic import ValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from app.core.config import get_settings
from app.core.exceptions import (
    EntityNotFoundError,
    ProviderNotConfiguredError,
    ProviderRequestError,
    TransientProviderError,
)
from app.schemas.provider import AuthorizedPayment, PaymentSnapshot, SubscriptionSnapshot

logger = structlog.get_logger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class ProviderClient:
    """Client for the payment provider REST API."""

    def __init__(
        self,
        access_token: str | None = None,
        base_url: str | None = None,
        timeout: float = 10.0,
        max_attempts: int | None = None,
        retry_wait_multiplier: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the provider client.

        Args:
            access_token: Bearer credential (defaults to PROVIDER_ACCESS_TOKEN)
            base_url: API root (defaults to PROVIDER_BASE_URL)
            timeout: Per-request timeout in seconds
            max_attempts: Attempts for transient failures (defaults to PROVIDER_MAX_ATTEMPTS)
            retry_wait_multiplier: Exponential backoff multiplier; 0 disables sleeping
            transport: Optional httpx transport, used by tests to mock the provider
        """
        settings = get_settings()
        self.access_token = access_token if access_token is not None else settings.provider_access_token
        self.base_url = (base_url or settings.provider_base_url).rstrip("/")
        self.timeout = timeout
        self.max_attempts = max_attempts or settings.provider_max_attempts
        self.retry_wait_multiplier = retry_wait_multiplier
        self._transport = transport

    def with_timeout(self, timeout: float) -> "ProviderClient":
        """Return a copy of this client with a different per-request timeout."""
        return ProviderClient(
            access_token=self.access_token,
            base_url=self.base_url,
            timeout=timeout,
            max_attempts=self.max_attempts,
            retry_wait_multiplier=self.retry_wait_multiplier,
            transport=self._transport,
        )

    def _headers(self) -> dict[str, str]:
        if not self.access_token:
            raise ProviderNotConfiguredError("Provider access token not configured")
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
        }

    async def _send_once(
        self,
        method: str,
        endpoint: str,
        entity: str,
        reference: str,
        params: dict | None = None,
        json: dict | None = None,
    ) -> Any:
        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
        ) as client:
            try:
                response = await client.request(method, endpoint, headers=self._headers(), params=params, json=json)
            except httpx.TimeoutException as e:
                raise TransientProviderError(f"Provider timeout on {method} {endpoint}") from e
            except httpx.TransportError as e:
                raise TransientProviderError(f"Provider unreachable on {method} {endpoint}: {e}") from e

        if response.status_code == 404:
            raise EntityNotFoundError(entity, reference)
        if response.status_code in RETRYABLE_STATUS_CODES:
            raise TransientProviderError(
                f"Provider returned {response.status_code} on {method} {endpoint}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise ProviderRequestError(
                f"Provider rejected {method} {endpoint}: {response.status_code}",
                status_code=response.status_code,
            )
        return response.json()

    async def _request(
        self,
        method: str,
        endpoint: str,
        entity: str,
        reference: str,
        params: dict | None = None,
        json: dict | None = None,
    ) -> Any:
        """Make an authenticated request, retrying transient failures."""
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TransientProviderError),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_wait_multiplier, max=8),
            reraise=True,
            before_sleep=lambda rs: logger.warning(
                "provider_request_retrying",
                method=method,
                endpoint=endpoint,
                attempt=rs.attempt_number,
                sleep_seconds=rs.next_action.sleep,
            ),
        )
        async for attempt in retrying:
            with attempt:
                return await self._send_once(method, endpoint, entity, reference, params=params, json=json)

    @staticmethod
    def _parse(model, data: Any, entity: str, reference: str):
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise ProviderRequestError(f"Unexpected {entity} payload for {reference}: {e}", status_code=200) from e

    async def get_payment(self, payment_id: str) -> PaymentSnapshot:
        data = await self._request("GET", f"/v1/payments/{payment_id}", "payment", payment_id)
        return self._parse(PaymentSnapshot, data, "payment", payment_id)

    async def get_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        data = await self._request("GET", f"/preapproval/{subscription_id}", "subscription", subscription_id)
        return self._parse(SubscriptionSnapshot, data, "subscription", subscription_id)

    async def get_authorized_payment(self, authorized_payment_id: str) -> AuthorizedPayment:
        data = await self._request(
            "GET", f"/authorized_payments/{authorized_payment_id}", "authorized_payment", authorized_payment_id
        )
        return self._parse(AuthorizedPayment, data, "authorized_payment", authorized_payment_id)

    async def search_payments(self, correlation_key: str) -> list[PaymentSnapshot]:
        """Search payments by external reference, newest first."""
        data = await self._request(
            "GET",
            "/v1/payments/search",
            "payment",
            correlation_key,
            params={
                "external_reference": correlation_key,
                "sort": "date_created",
                "criteria": "desc",
            },
        )
        return [self._parse(PaymentSnapshot, item, "payment", correlation_key) for item in data.get("results", [])]

    async def search_subscriptions(self, correlation_key: str) -> list[SubscriptionSnapshot]:
        data = await self._request(
            "GET",
            "/preapproval/search",
            "subscription",
            correlation_key,
            params={"external_reference": correlation_key},
        )
        return [
            self._parse(SubscriptionSnapshot, item, "subscription", correlation_key)
            for item in data.get("results", [])
        ]

    async def update_subscription_status(self, subscription_id: str, status: str) -> SubscriptionSnapshot:
        """Set a preapproval to ``paused``, ``authorized`` or ``cancelled``."""
        data = await self._request(
            "PUT",
            f"/preapproval/{subscription_id}",
            "subscription",
            subscription_id,
            json={"status": status},
        )
        logger.info("provider_subscription_updated", provider_subscription_id=subscription_id, status=status)
        return self._parse(SubscriptionSnapshot, data, "subscription", subscription_id)


def get_provider_client() -> ProviderClient:
    """Build a client from settings. FastAPI dependency and lifespan factory."""
    return ProviderClient()
