"""PayPal REST adapter (Orders v2 + webhook signature verification).

Uses the client-credentials grant for an access token on every operation;
the handlers are short-lived, so there is no token cache to invalidate.
"""

from typing import Any

import httpx
import structlog

from dataset_gate.providers.errors import PaymentGatewayError
from dataset_gate.providers.payments.base import CaptureResult, PaymentGateway

logger = structlog.get_logger()

_WEBHOOK_HEADER_FIELDS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


def _as_dict(node: Any) -> dict[str, Any]:
    return node if isinstance(node, dict) else {}


def _first_item(node: Any) -> dict[str, Any]:
    """First element of a JSON array as an object, or {}."""
    return _as_dict(node[0]) if isinstance(node, list) and node else {}


def _first_capture(data: dict[str, Any]) -> dict[str, Any]:
    """Return purchase_units[0].payments.captures[0], or {}."""
    unit = _first_item(data.get("purchase_units"))
    return _first_item(_as_dict(unit.get("payments")).get("captures"))


def _json_object(resp: httpx.Response, operation: str) -> dict[str, Any]:
    """Parse a 2xx body that must be a JSON object.

    Raises:
        PaymentGatewayError: The body is not JSON or not an object.
    """
    try:
        body = resp.json()
    except ValueError as exc:
        raise PaymentGatewayError(f"PayPal {operation}: invalid JSON body") from exc
    if not isinstance(body, dict):
        raise PaymentGatewayError(f"PayPal {operation}: unexpected body")
    return body


def _required_str(body: dict[str, Any], key: str, operation: str) -> str:
    value = body.get(key)
    if not isinstance(value, str) or not value:
        raise PaymentGatewayError(f"PayPal {operation}: missing {key}")
    return value


def parse_capture_response(http_status: int, body: Any) -> CaptureResult:
    """Build a CaptureResult from a capture response body.

    Status comes from the top level, falling back to the first capture.
    Amount and currency come from the first capture, falling back to the
    first purchase unit.
    """
    ok = 200 <= http_status < 300
    if not isinstance(body, dict):
        return CaptureResult(ok=ok, http_status=http_status, raw=body)

    capture = _first_capture(body)
    unit = _first_item(body.get("purchase_units"))
    capture_amount = _as_dict(capture.get("amount"))
    unit_amount = _as_dict(unit.get("amount"))
    payer = _as_dict(body.get("payer"))

    return CaptureResult(
        ok=ok,
        http_status=http_status,
        status=body.get("status") or capture.get("status") or "UNKNOWN",
        amount=capture_amount.get("value") or unit_amount.get("value"),
        currency=capture_amount.get("currency_code")
        or unit_amount.get("currency_code"),
        capture_id=capture.get("id"),
        payer=(
            {"payer_id": payer.get("payer_id"), "email": payer.get("email_address")}
            if payer
            else None
        ),
        raw=body,
    )


class PayPalGateway(PaymentGateway):
    """PaymentGateway backed by the PayPal REST API.

    Args:
        client_id: PayPal REST client id.
        client_secret: PayPal REST client secret.
        base_url: API base URL (sandbox or live).
        webhook_id: Webhook id registered with PayPal (for verification).
        timeout_seconds: Timeout for every HTTP call.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        base_url: str,
        webhook_id: str = "",
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._base_url = base_url.rstrip("/")
        self._webhook_id = webhook_id
        self._timeout = timeout_seconds
        self._transport = transport

    @property
    def provider_name(self) -> str:
        """Return 'paypal'."""
        return "paypal"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
        )

    async def _access_token(self, client: httpx.AsyncClient) -> str:
        """Exchange client credentials for a bearer token.

        Raises:
            PaymentGatewayError: Missing credentials, a non-2xx answer, or a
                malformed body.
        """
        if not self._client_id or not self._client_secret:
            raise PaymentGatewayError("Missing PayPal credentials")

        resp = await client.post(
            "/v1/oauth2/token",
            auth=(self._client_id, self._client_secret),
            data={"grant_type": "client_credentials"},
        )
        if resp.is_error:
            raise PaymentGatewayError(f"PayPal token error {resp.status_code}")
        return _required_str(_json_object(resp, "token"), "access_token", "token")

    async def create_order(
        self,
        *,
        amount: str,
        currency: str,
        description: str,
        brand_name: str,
    ) -> str:
        """Create a CAPTURE-intent order and return its id."""
        try:
            async with self._client() as client:
                access = await self._access_token(client)
                resp = await client.post(
                    "/v2/checkout/orders",
                    headers={"Authorization": f"Bearer {access}"},
                    json={
                        "intent": "CAPTURE",
                        "purchase_units": [
                            {
                                "amount": {"currency_code": currency, "value": amount},
                                "description": description,
                            }
                        ],
                        "application_context": {
                            "shipping_preference": "NO_SHIPPING",
                            "user_action": "PAY_NOW",
                            "brand_name": brand_name,
                        },
                    },
                )
        except httpx.HTTPError as exc:
            raise PaymentGatewayError(f"PayPal unreachable: {exc}") from exc

        if resp.is_error:
            raise PaymentGatewayError(f"PayPal create order error {resp.status_code}")
        return _required_str(_json_object(resp, "create order"), "id", "create order")

    async def capture_order(self, order_id: str) -> CaptureResult:
        """Capture an approved order; non-2xx answers are returned, not raised."""
        try:
            async with self._client() as client:
                access = await self._access_token(client)
                resp = await client.post(
                    f"/v2/checkout/orders/{order_id}/capture",
                    headers={
                        "Authorization": f"Bearer {access}",
                        "Content-Type": "application/json",
                    },
                )
        except httpx.HTTPError as exc:
            raise PaymentGatewayError(f"PayPal unreachable: {exc}") from exc

        try:
            body: Any = resp.json()
        except ValueError:
            body = resp.text  # keep raw for diagnostics
        return parse_capture_response(resp.status_code, body)

    async def verify_webhook(
        self,
        headers: dict[str, str],
        event: dict[str, Any],
    ) -> bool:
        """Ask PayPal to verify the transmission signature."""
        if not self._webhook_id:
            raise PaymentGatewayError("Missing PayPal webhook id")

        payload: dict[str, Any] = {
            field_name: headers.get(header_name)
            for field_name, header_name in _WEBHOOK_HEADER_FIELDS.items()
        }
        payload["webhook_id"] = self._webhook_id
        payload["webhook_event"] = event

        try:
            async with self._client() as client:
                access = await self._access_token(client)
                resp = await client.post(
                    "/v1/notifications/verify-webhook-signature",
                    headers={"Authorization": f"Bearer {access}"},
                    json=payload,
                )
        except httpx.HTTPError as exc:
            raise PaymentGatewayError(f"PayPal unreachable: {exc}") from exc

        if resp.is_error:
            logger.warning(
                "webhook_verification_request_failed", status=resp.status_code
            )
            return False
        verification = _json_object(resp, "verify webhook").get("verification_status")
        return bool(verification == "SUCCESS")
