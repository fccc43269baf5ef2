"""HTTP payment processor adapter for a Stripe-style PaymentIntents API."""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from pydantic import BaseModel, Field

from billing_lifecycle.core.exceptions import ProcessorError
from billing_lifecycle.processor.base import ChargeResult, ChargeStatus

logger = structlog.get_logger(__name__)


class ProcessorConfig(BaseModel):
    """Connection settings for :class:`HttpPaymentProcessor`.

    Attributes:
        api_key: Secret API key, sent as the Basic auth username.
        base_url: Override the default API base URL.
        timeout: HTTP request timeout in seconds.
        extra_headers: Additional headers merged into every request.
    """

    api_key: str
    base_url: str | None = None
    timeout: float = 30.0
    extra_headers: dict[str, str] = Field(default_factory=dict)


class HttpPaymentProcessor:
    """Charges payment instruments through a PaymentIntents-style REST API.

    Declines (HTTP 402 card errors) become ``declined`` results carrying the
    processor's decline code. Transport failures, timeouts and 5xx responses
    raise :class:`ProcessorError`, which the collector records as
    ``processor_error``.

    Usage::

        config = ProcessorConfig(api_key="sk_test_xxx")
        async with HttpPaymentProcessor(config) as processor:
            result = await processor.charge("pm_123", 1100, "USD", "in_1:1")
    """

    DEFAULT_BASE_URL = "https://api.stripe.com/v1"

    def __init__(
        self,
        config: ProcessorConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def connect(self) -> None:
        """Open the HTTP client with Basic auth (key as username, empty password)."""
        base_url = self._config.base_url or self.DEFAULT_BASE_URL
        self._client = httpx.AsyncClient(
            base_url=base_url,
            auth=httpx.BasicAuth(username=self._config.api_key, password=""),
            headers={"Accept": "application/json", **self._config.extra_headers},
            timeout=self._config.timeout,
            transport=self._transport,
        )
        logger.info("processor_connected", base_url=base_url)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> HttpPaymentProcessor:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _ensure_connected(self) -> httpx.AsyncClient:
        if self._client is None:
            raise ProcessorError(
                "HttpPaymentProcessor is not connected. Call await processor.connect() first.",
                code="not_connected",
            )
        return self._client

    async def _request(
        self,
        method: str,
        url: str,
        *,
        data: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        client = self._ensure_connected()
        try:
            return await client.request(method, url, data=data, headers=headers)
        except httpx.TimeoutException as exc:
            raise ProcessorError(f"Processor request timed out: {exc}", code="timeout") from exc
        except httpx.HTTPError as exc:
            raise ProcessorError(
                f"Processor request failed: {exc}", code="processing_error"
            ) from exc

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError as exc:
            raise ProcessorError(
                f"Processor returned a non-JSON body (HTTP {response.status_code})",
                code="processing_error",
            ) from exc
        if not isinstance(body, dict):
            raise ProcessorError("Processor returned an unexpected body", code="processing_error")
        return body

    async def charge(
        self,
        instrument_ref: str,
        amount: int,
        currency: str,
        idempotency_key: str,
    ) -> ChargeResult:
        """Create and confirm a PaymentIntent off-session.

        The ``Idempotency-Key`` header makes a repeated call with the same
        key return the original outcome instead of charging twice.
        """
        response = await self._request(
            "POST",
            "/payment_intents",
            data={
                "amount": str(amount),
                "currency": currency.lower(),
                "payment_method": instrument_ref,
                "confirm": "true",
                "off_session": "true",
            },
            headers={"Idempotency-Key": idempotency_key},
        )
        body = self._json(response)

        if response.status_code == 402:
            error = body.get("error") or {}
            decline_code = error.get("decline_code") or error.get("code") or "card_declined"
            intent = error.get("payment_intent") or {}
            logger.info(
                "processor_charge_declined",
                idempotency_key=idempotency_key,
                decline_code=decline_code,
            )
            return ChargeResult(
                status=ChargeStatus.DECLINED,
                processor_ref=intent.get("id"),
                decline_code=decline_code,
                message=error.get("message", ""),
            )

        if response.status_code >= 400:
            error = body.get("error") or {}
            raise ProcessorError(
                f"Processor rejected charge (HTTP {response.status_code}): "
                f"{error.get('message', '')}",
                code=error.get("code") or "processing_error",
                details={"status_code": response.status_code},
            )

        intent_status = body.get("status")
        if intent_status == "succeeded":
            return ChargeResult(status=ChargeStatus.SUCCEEDED, processor_ref=body.get("id"))

        # processing / requires_action: the final answer arrives as a webhook.
        logger.info(
            "processor_charge_unsettled",
            idempotency_key=idempotency_key,
            intent_status=intent_status,
        )
        return ChargeResult(
            status=ChargeStatus.ERROR,
            processor_ref=body.get("id"),
            decline_code="processing_error",
            message=f"payment intent is {intent_status}",
        )

    async def retrieve_subscription_status(self, processor_subscription_ref: str) -> str:
        response = await self._request("GET", f"/subscriptions/{processor_subscription_ref}")
        body = self._json(response)
        if response.status_code >= 400:
            raise ProcessorError(
                f"Cannot retrieve subscription {processor_subscription_ref} "
                f"(HTTP {response.status_code})",
                code="processing_error",
            )
        return str(body.get("status", ""))
