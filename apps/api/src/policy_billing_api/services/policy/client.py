"""HTTP client for the policy administration platform."""

from __future__ import annotations

from typing import Any, Mapping, Sequence

import httpx
from loguru import logger

from policy_billing_api.core.settings import settings
from policy_billing_api.services.billing.errors import ConfigurationError, UpstreamCallError


class PolicyServiceClient:
    """Thin async wrapper over the policy platform's REST API.

    Every failure, whether transport-level or a non-2xx response, surfaces as
    :class:`UpstreamCallError` carrying the operation name and its parameters.
    """

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not base_url:
            raise ConfigurationError("Policy API base URL must be configured")
        if not api_key:
            raise ConfigurationError("Policy API key must be configured")
        self._base_url = base_url.rstrip("/")
        self._auth = httpx.BasicAuth(api_key, "")
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    @classmethod
    def from_settings(cls) -> "PolicyServiceClient":
        return cls(
            base_url=settings.policy_api_base_url,
            api_key=settings.policy_api_key,
            timeout_seconds=settings.policy_api_timeout_seconds,
        )

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        json: Any = None,
        allow_missing: bool = False,
    ) -> Any:
        url = f"{self._base_url}/{path.lstrip('/')}"
        try:
            async with httpx.AsyncClient(
                auth=self._auth,
                timeout=self._timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.request(method, url, json=json)
        except httpx.HTTPError as exc:
            logger.warning("Policy service request failed", operation=operation, url=url, error=str(exc))
            raise UpstreamCallError(
                f"Policy service {operation} failed: {exc}",
                operation=operation,
                params={"path": path, "body": json},
            ) from exc

        if allow_missing and response.status_code == 404:
            return None
        if response.status_code >= 400:
            logger.warning(
                "Policy service returned an error",
                operation=operation,
                url=url,
                status_code=response.status_code,
            )
            raise UpstreamCallError(
                f"Policy service {operation} responded with {response.status_code}",
                operation=operation,
                params={"path": path, "body": json},
                status_code=response.status_code,
                response=response.text[:500],
            )
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            logger.warning(
                "Policy service returned a non-JSON body",
                operation=operation,
                url=url,
                status_code=response.status_code,
            )
            raise UpstreamCallError(
                f"Policy service {operation} returned an invalid JSON body",
                operation=operation,
                params={"path": path, "body": json},
                status_code=response.status_code,
                response=response.text[:500],
            ) from exc

    async def get_policy(self, policy_id: str) -> dict[str, Any]:
        return await self._request("get_policy", "GET", f"/policies/{policy_id}")

    async def update_policy_app_data(self, policy_id: str, app_data: Mapping[str, Any]) -> dict[str, Any]:
        return await self._request(
            "update_policy_app_data",
            "PATCH",
            f"/policies/{policy_id}",
            json={"app_data": dict(app_data)},
        )

    async def get_policyholder(self, policyholder_id: str) -> dict[str, Any]:
        return await self._request("get_policyholder", "GET", f"/policyholders/{policyholder_id}")

    async def get_policy_payment_method(self, policy_id: str) -> dict[str, Any] | None:
        return await self._request(
            "get_policy_payment_method",
            "GET",
            f"/policies/{policy_id}/payment-method",
            allow_missing=True,
        )

    async def get_policyholder_payment_methods(self, policyholder_id: str) -> list[dict[str, Any]]:
        methods = await self._request(
            "get_policyholder_payment_methods",
            "GET",
            f"/policyholders/{policyholder_id}/payment-methods",
        )
        return list(methods or [])

    async def assign_policy_payment_method(self, policy_id: str, payment_method_id: str) -> dict[str, Any]:
        return await self._request(
            "assign_policy_payment_method",
            "POST",
            f"/policies/{policy_id}/payment-method",
            json={"payment_method_id": payment_method_id},
        )

    async def create_policyholder_payment_method(
        self,
        policyholder_id: str,
        payload: Mapping[str, Any],
    ) -> dict[str, Any]:
        return await self._request(
            "create_policyholder_payment_method",
            "POST",
            f"/policyholders/{policyholder_id}/payment-methods",
            json=dict(payload),
        )

    async def create_policy_payment(self, policy_id: str, payload: Mapping[str, Any]) -> dict[str, Any]:
        return await self._request(
            "create_policy_payment",
            "POST",
            f"/policies/{policy_id}/payments",
            json=dict(payload),
        )

    async def update_payments(self, updates: Sequence[Mapping[str, Any]]) -> None:
        await self._request(
            "update_payments",
            "PUT",
            "/payments",
            json={"payment_updates": [dict(update) for update in updates]},
        )

    async def trigger_custom_notification_event(
        self,
        *,
        custom_event_key: str,
        custom_event_type: str,
        policy_id: str,
        payment_id: str | None = None,
    ) -> None:
        body: dict[str, Any] = {
            "custom_event_key": custom_event_key,
            "custom_event_type": custom_event_type,
            "policy_id": policy_id,
        }
        if payment_id:
            body["payment_id"] = payment_id
        await self._request("trigger_custom_notification_event", "POST", "/notifications/custom-events", json=body)


__all__ = ["PolicyServiceClient"]
