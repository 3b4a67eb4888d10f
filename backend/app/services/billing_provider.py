from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import hashlib
import hmac
import json
import logging
import time
from typing import Mapping, Protocol
from urllib import error as urlerror
from urllib import parse as urlparse
from urllib import request as urlrequest

import stripe

from app.core.config import settings
from app.core.errors import (
    ProviderError,
    UnsupportedOperation,
    ValidationFailed,
    WebhookSignatureError,
)

logger = logging.getLogger(__name__)

VALID_PROVIDERS = {"stripe", "mercadopago"}
MP_PAYMENT_TOPICS = {"payment", "subscription_authorized_payment"}


@dataclass(frozen=True)
class CheckoutRequest:
    intent_id: str
    email: str
    full_name: str | None
    company_name: str | None
    plan_name: str
    amount_usd: float
    amount_ars: float | None
    success_url: str
    cancel_url: str


@dataclass(frozen=True)
class CheckoutResult:
    provider: str
    checkout_url: str
    # intent columns to persist (customer/session or preapproval ids)
    references: dict


@dataclass(frozen=True)
class ChargeRequest:
    intent_id: str
    reference: str
    amount_usd: float
    fx_rate_usd_ars: float | None
    customer_id: str | None = None
    preapproval_id: str | None = None
    description: str = ""


@dataclass(frozen=True)
class ChargeResult:
    success: bool
    provider_ref: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class PlanChangeRequest:
    provider_subscription_id: str
    plan_name: str
    new_price: float
    stripe_price_id: str | None
    proration_behavior: str


@dataclass(frozen=True)
class PlanChangeResult:
    status: str | None
    current_period_end: datetime | None


@dataclass(frozen=True)
class SetupIntentResult:
    client_secret: str
    setup_intent_id: str


@dataclass(frozen=True)
class PaymentMethodCheck:
    verified: bool
    error: str | None = None
    card: dict | None = None


@dataclass(frozen=True)
class WebhookEnvelope:
    """A verified delivery, identified but not yet interpreted."""

    provider: str
    event_key: str
    event_type: str
    payload: dict


@dataclass(frozen=True)
class BillingEvent:
    kind: str
    provider: str
    event_key: str
    event_type: str
    provider_subscription_id: str | None = None
    provider_customer_id: str | None = None
    status: str | None = None
    intent_ref: str | None = None
    invoice_id: str | None = None
    failure_reason: str | None = None
    amount: float | None = None
    card: dict | None = None
    metadata: dict = field(default_factory=dict)


class PaymentProvider(Protocol):
    provider_code: str

    def create_checkout(self, request: CheckoutRequest) -> CheckoutResult:
        ...

    def charge_trial_end(self, request: ChargeRequest) -> ChargeResult:
        ...

    def change_plan(self, request: PlanChangeRequest) -> PlanChangeResult:
        ...

    def cancel(self, provider_subscription_id: str) -> None:
        ...

    def detach_payment_method(self, payment_method_ref: str) -> None:
        ...

    def create_setup_intent(self, email: str, name: str | None = None) -> SetupIntentResult:
        ...

    def verify_payment_method(self, payment_method_ref: str) -> PaymentMethodCheck:
        ...

    def parse_webhook(self, headers: Mapping[str, str], raw_body: bytes, query: Mapping[str, str]) -> WebhookEnvelope | None:
        ...

    def resolve_event(self, envelope: WebhookEnvelope) -> BillingEvent:
        ...


def http_json_request(
    method: str,
    url: str,
    payload: dict | None = None,
    *,
    headers: dict[str, str] | None = None,
    timeout: int = 20,
    source: str = "http",
) -> dict:
    req_headers = {"Accept": "application/json"}
    body = None
    if payload is not None:
        req_headers["Content-Type"] = "application/json"
        body = json.dumps(payload).encode("utf-8")
    if headers:
        req_headers.update(headers)
    req = urlrequest.Request(url=url, method=method.upper(), data=body, headers=req_headers)
    try:
        with urlrequest.urlopen(req, timeout=timeout) as resp:
            raw = resp.read().decode("utf-8")
    except urlerror.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise ProviderError(source, _provider_error_text(detail) or f"HTTP {exc.code}") from exc
    except (urlerror.URLError, TimeoutError) as exc:
        raise ProviderError(source, f"No se pudo contactar {source}: {exc}") from exc
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ProviderError(source, "Respuesta JSON invalida") from exc


def _provider_error_text(raw: str) -> str:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return raw.strip()
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error") or raw).strip()
    return raw.strip()


def fetch_usd_ars_rate() -> float:
    data = http_json_request("GET", settings.FX_RATE_URL, timeout=settings.FX_TIMEOUT_SECONDS, source="fx")
    rate = (data.get("rates") or {}).get("ARS") if isinstance(data, dict) else None
    if not isinstance(rate, (int, float)) or rate <= 0:
        raise ProviderError("fx", "FX invalido (USD->ARS)")
    return float(rate)


def _epoch_to_datetime(value) -> datetime | None:
    if value in (None, "", 0):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError):
        return None


# ---------------------------------------------------------------- Stripe


def _stripe_error_text(exc: stripe.StripeError) -> str:
    return exc.user_message or str(exc) or exc.__class__.__name__


def _invoice_subscription_id(invoice: Mapping) -> str | None:
    sub_id = invoice.get("subscription")
    if sub_id:
        return sub_id if isinstance(sub_id, str) else sub_id.get("id")
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return details.get("subscription")


def stripe_event_to_billing_event(event: Mapping) -> BillingEvent:
    event_type = str(event.get("type") or "")
    obj = (event.get("data") or {}).get("object") or {}
    base = {"provider": "stripe", "event_key": str(event.get("id") or ""), "event_type": event_type}

    if event_type in {"invoice.payment_failed", "invoice.payment_succeeded"}:
        error = obj.get("last_payment_error") or obj.get("last_finalization_error") or {}
        return BillingEvent(
            kind="payment_failed" if event_type == "invoice.payment_failed" else "payment_succeeded",
            provider_subscription_id=_invoice_subscription_id(obj),
            provider_customer_id=obj.get("customer"),
            invoice_id=obj.get("id"),
            failure_reason=error.get("message"),
            amount=(obj.get("amount_due") or 0) / 100.0,
            **base,
        )
    if event_type == "customer.subscription.deleted":
        return BillingEvent(
            kind="subscription_canceled",
            provider_subscription_id=obj.get("id"),
            provider_customer_id=obj.get("customer"),
            status="canceled",
            **base,
        )
    if event_type == "checkout.session.completed":
        metadata = obj.get("metadata") or {}
        return BillingEvent(
            kind="checkout_completed",
            provider_subscription_id=obj.get("subscription"),
            provider_customer_id=obj.get("customer"),
            intent_ref=metadata.get("intent_id") or obj.get("client_reference_id"),
            **base,
        )
    return BillingEvent(kind="unhandled", **base)


class StripeProvider:
    provider_code = "stripe"

    def _client(self):
        if not settings.STRIPE_SECRET_KEY:
            raise ProviderError("stripe", "STRIPE_SECRET_KEY no configurado")
        stripe.api_key = settings.STRIPE_SECRET_KEY
        stripe.api_version = settings.STRIPE_API_VERSION
        return stripe

    def create_checkout(self, request: CheckoutRequest) -> CheckoutResult:
        client = self._client()
        metadata = {"intent_id": request.intent_id}
        try:
            customer = client.Customer.create(
                email=request.email,
                name=request.full_name or request.company_name or request.email,
                metadata=metadata,
            )
            session = client.checkout.Session.create(
                mode="subscription",
                customer=customer["id"],
                client_reference_id=request.intent_id,
                line_items=[
                    {
                        "price_data": {
                            "currency": settings.BILLING_CURRENCY,
                            "product_data": {"name": request.plan_name},
                            "unit_amount": int(round(request.amount_usd * 100)),
                            "recurring": {"interval": "month"},
                        },
                        "quantity": 1,
                    }
                ],
                subscription_data={"trial_period_days": settings.BILLING_TRIAL_DAYS, "metadata": metadata},
                metadata=metadata,
                success_url=request.success_url,
                cancel_url=request.cancel_url,
            )
        except stripe.StripeError as exc:
            raise ProviderError("stripe", _stripe_error_text(exc)) from exc
        return CheckoutResult(
            provider=self.provider_code,
            checkout_url=session["url"],
            references={
                "stripe_customer_id": customer["id"],
                "stripe_checkout_session_id": session["id"],
            },
        )

    def charge_trial_end(self, request: ChargeRequest) -> ChargeResult:
        if not request.customer_id:
            return ChargeResult(success=False, error="El intent no tiene stripe_customer_id")
        client = self._client()
        try:
            invoice = client.Invoice.create(
                customer=request.customer_id,
                auto_advance=True,
                description=request.description,
                metadata={"intent_id": request.intent_id, "reference": request.reference},
                idempotency_key=request.reference,
            )
        except stripe.StripeError as exc:
            return ChargeResult(success=False, error=_stripe_error_text(exc))
        return ChargeResult(success=True, provider_ref=invoice["id"])

    def change_plan(self, request: PlanChangeRequest) -> PlanChangeResult:
        client = self._client()
        try:
            current = client.Subscription.retrieve(request.provider_subscription_id)
            current_item = current["items"]["data"][0]
            item = {"id": current_item["id"]}
            if request.stripe_price_id:
                item["price"] = request.stripe_price_id
            else:
                item["price_data"] = {
                    "currency": settings.BILLING_CURRENCY,
                    "product": current_item["price"]["product"],
                    "unit_amount": int(round(request.new_price * 100)),
                    "recurring": {"interval": "month"},
                }
            updated = client.Subscription.modify(
                request.provider_subscription_id,
                items=[item],
                proration_behavior=request.proration_behavior,
            )
        except stripe.StripeError as exc:
            raise ProviderError("stripe", _stripe_error_text(exc)) from exc
        period_end = updated.get("current_period_end") or current_item.get("current_period_end")
        return PlanChangeResult(status=updated.get("status"), current_period_end=_epoch_to_datetime(period_end))

    def cancel(self, provider_subscription_id: str) -> None:
        client = self._client()
        try:
            client.Subscription.cancel(provider_subscription_id)
        except stripe.StripeError as exc:
            raise ProviderError("stripe", _stripe_error_text(exc)) from exc

    def detach_payment_method(self, payment_method_ref: str) -> None:
        client = self._client()
        try:
            client.PaymentMethod.detach(payment_method_ref)
        except stripe.StripeError as exc:
            raise ProviderError("stripe", _stripe_error_text(exc)) from exc

    def create_setup_intent(self, email: str, name: str | None = None) -> SetupIntentResult:
        client = self._client()
        try:
            setup = client.SetupIntent.create(
                payment_method_types=["card"],
                usage="off_session",
                metadata={"email": email, "name": name or "", "purpose": "signup"},
            )
        except stripe.StripeError as exc:
            raise ProviderError("stripe", _stripe_error_text(exc)) from exc
        return SetupIntentResult(client_secret=setup["client_secret"], setup_intent_id=setup["id"])

    def verify_payment_method(self, payment_method_ref: str) -> PaymentMethodCheck:
        client = self._client()
        try:
            method = client.PaymentMethod.retrieve(payment_method_ref)
        except stripe.StripeError as exc:
            return PaymentMethodCheck(verified=False, error=_stripe_error_text(exc))
        if method.get("type") != "card":
            return PaymentMethodCheck(verified=False, error="El metodo de pago no es una tarjeta")
        card = method.get("card")
        if not card:
            return PaymentMethodCheck(verified=False, error="Datos de tarjeta invalidos")
        return PaymentMethodCheck(
            verified=True,
            card={
                "brand": card.get("brand"),
                "last4": card.get("last4"),
                "exp_month": card.get("exp_month"),
                "exp_year": card.get("exp_year"),
            },
        )

    def parse_webhook(self, headers: Mapping[str, str], raw_body: bytes, query: Mapping[str, str]) -> WebhookEnvelope:
        secret = settings.STRIPE_WEBHOOK_SECRET
        if not secret:
            raise WebhookSignatureError("STRIPE_WEBHOOK_SECRET no configurado")
        signature = headers.get("stripe-signature")
        if not signature:
            raise WebhookSignatureError("Falta header stripe-signature")
        try:
            event = stripe.Webhook.construct_event(
                raw_body,
                signature,
                secret,
                tolerance=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
            )
        except stripe.SignatureVerificationError as exc:
            raise WebhookSignatureError("Firma de webhook invalida") from exc
        except ValueError as exc:
            raise ValidationFailed("Payload JSON invalido") from exc
        payload = json.loads(raw_body)
        return WebhookEnvelope(
            provider=self.provider_code,
            event_key=str(event["id"]),
            event_type=str(event["type"]),
            payload=payload,
        )

    def resolve_event(self, envelope: WebhookEnvelope) -> BillingEvent:
        return stripe_event_to_billing_event(envelope.payload)


# ---------------------------------------------------------------- MercadoPago


def map_mp_status(status: str | None) -> str:
    s = (status or "").strip().lower()
    if s in {"authorized", "approved", "active"}:
        return "active"
    if s == "paused":
        return "past_due"
    if s in {"cancelled", "canceled"}:
        return "canceled"
    return "incomplete"


def _parse_mp_signature(signature_header: str | None) -> tuple[int, list[str]]:
    if not signature_header:
        return (0, [])
    timestamp = 0
    signatures: list[str] = []
    for part in signature_header.split(","):
        if "=" not in part:
            continue
        k, v = part.split("=", 1)
        key = k.strip().lower()
        val = v.strip()
        if key == "ts":
            try:
                timestamp = int(val)
            except ValueError:
                timestamp = 0
        elif key == "v1":
            signatures.append(val)
    return (timestamp, signatures)


def mp_signature_manifest(data_id: str, request_id: str | None, ts: int) -> str:
    parts = []
    if data_id:
        parts.append(f"id:{data_id.lower() if data_id.isalnum() else data_id};")
    if request_id:
        parts.append(f"request-id:{request_id};")
    parts.append(f"ts:{ts};")
    return "".join(parts)


def verify_mp_signature(
    signature_header: str | None,
    request_id: str | None,
    data_id: str,
    secret: str,
    max_age_seconds: int,
    *,
    now: float | None = None,
) -> bool:
    ts, signatures = _parse_mp_signature(signature_header)
    if ts <= 0 or not signatures:
        return False
    ts_seconds = ts / 1000 if ts > 10**11 else ts
    current = time.time() if now is None else now
    if abs(current - ts_seconds) > max_age_seconds:
        return False
    manifest = mp_signature_manifest(data_id, request_id, ts)
    expected = hmac.new(secret.encode("utf-8"), manifest.encode("utf-8"), hashlib.sha256).hexdigest()
    return any(hmac.compare_digest(expected, s) for s in signatures)


def _mp_notification_ids(body: Mapping, query: Mapping[str, str]) -> tuple[str, str]:
    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    topic = body.get("type") or body.get("topic") or query.get("type") or query.get("topic") or ""
    data_id = data.get("id") or body.get("id") or query.get("data.id") or query.get("id") or ""
    return (str(topic).strip(), str(data_id).strip())


def _mp_card(resource: Mapping) -> dict | None:
    card = resource.get("card")
    if not isinstance(card, dict) or not card:
        return None
    holder = card.get("cardholder") or {}
    return {
        "brand": resource.get("payment_method_id"),
        "last4": card.get("last_four_digits"),
        "exp_month": card.get("expiration_month"),
        "exp_year": card.get("expiration_year"),
        "holder_name": holder.get("name"),
    }


def mp_resource_to_event(topic: str, data_id: str, resource: Mapping) -> BillingEvent:
    base = {"provider": "mercadopago", "event_key": f"{topic}:{data_id}", "event_type": topic}

    if topic in MP_PAYMENT_TOPICS:
        payment = resource.get("payment") if isinstance(resource.get("payment"), dict) else {}
        raw_status = str(payment.get("status") or resource.get("status") or "").lower()
        metadata = resource.get("metadata") if isinstance(resource.get("metadata"), dict) else {}
        preapproval_id = resource.get("preapproval_id") or metadata.get("preapproval_id")
        if raw_status == "approved":
            kind = "payment_succeeded"
        elif raw_status == "rejected":
            kind = "payment_failed"
        else:
            kind = "unhandled"
        return BillingEvent(
            kind=kind,
            provider_subscription_id=preapproval_id,
            status=raw_status or None,
            intent_ref=resource.get("external_reference"),
            invoice_id=str(payment.get("id") or resource.get("id") or data_id),
            failure_reason=resource.get("status_detail") or resource.get("rejection_code"),
            amount=resource.get("transaction_amount"),
            card=_mp_card(resource),
            **base,
        )

    return BillingEvent(
        kind="status_changed",
        provider_subscription_id=str(resource.get("id") or data_id),
        provider_customer_id=(str(resource["payer_id"]) if resource.get("payer_id") else None),
        status=map_mp_status(resource.get("status")),
        intent_ref=resource.get("external_reference"),
        metadata={"mp_status": resource.get("status")},
        **base,
    )


class MercadoPagoProvider:
    provider_code = "mercadopago"

    def _request(self, method: str, path: str, payload: dict | None = None, *, headers: dict[str, str] | None = None) -> dict:
        if not settings.MP_ACCESS_TOKEN:
            raise ProviderError("mercadopago", "MP_ACCESS_TOKEN no configurado")
        req_headers = {"Authorization": f"Bearer {settings.MP_ACCESS_TOKEN}"}
        if headers:
            req_headers.update(headers)
        return http_json_request(
            method,
            f"{settings.MP_API_BASE_URL.rstrip('/')}{path}",
            payload,
            headers=req_headers,
            timeout=settings.MP_HTTP_TIMEOUT_SECONDS,
            source="mercadopago",
        )

    def create_checkout(self, request: CheckoutRequest) -> CheckoutResult:
        if request.amount_ars is None:
            raise ValidationFailed("El intent no tiene monto en ARS")
        reason = f"Suscripcion {request.plan_name}"
        plan = self._request(
            "POST",
            "/preapproval_plan",
            {
                "reason": reason,
                "auto_recurring": {
                    "frequency": 1,
                    "frequency_type": "months",
                    "transaction_amount": float(request.amount_ars),
                    "currency_id": "ARS",
                    "free_trial": {"frequency": settings.BILLING_TRIAL_DAYS, "frequency_type": "days"},
                },
                "back_url": request.success_url,
            },
        )
        plan_id = plan.get("id")
        if not plan_id:
            raise ProviderError("mercadopago", "MercadoPago no devolvio id de preapproval_plan")
        preapproval = self._request(
            "POST",
            "/preapproval",
            {
                "preapproval_plan_id": plan_id,
                "reason": reason,
                "payer_email": request.email,
                "external_reference": request.intent_id,
                "back_url": request.success_url,
            },
        )
        url = preapproval.get("init_point")
        if settings.MP_SANDBOX and preapproval.get("sandbox_init_point"):
            url = preapproval["sandbox_init_point"]
        url = url or preapproval.get("sandbox_init_point")
        if not url or not preapproval.get("id"):
            raise ProviderError("mercadopago", "MercadoPago no devolvio init_point")
        return CheckoutResult(
            provider=self.provider_code,
            checkout_url=url,
            references={"mp_preapproval_plan_id": str(plan_id), "mp_preapproval_id": str(preapproval["id"])},
        )

    def charge_trial_end(self, request: ChargeRequest) -> ChargeResult:
        if not request.preapproval_id:
            return ChargeResult(success=False, error="El intent no tiene preapproval de MercadoPago")
        fx = request.fx_rate_usd_ars or settings.BILLING_DEFAULT_USD_ARS_RATE
        amount_ars = round(float(request.amount_usd) * float(fx), 2)
        if amount_ars <= 0:
            return ChargeResult(
                success=False,
                error=f"Monto invalido para cobrar: {amount_ars} (USD: {request.amount_usd}, FX: {fx})",
            )
        try:
            payment = self._request(
                "POST",
                "/authorized_payments",
                {
                    "preapproval_id": request.preapproval_id,
                    "amount": amount_ars,
                    "reference_id": request.reference,
                    "description": request.description,
                },
                headers={"X-Idempotency-Key": request.reference},
            )
        except ProviderError as exc:
            return ChargeResult(success=False, error=f"MercadoPago error: {exc.detail}")
        return ChargeResult(success=True, provider_ref=str(payment.get("id") or ""))

    def change_plan(self, request: PlanChangeRequest) -> PlanChangeResult:
        raise UnsupportedOperation("El cambio de plan no esta disponible para suscripciones de MercadoPago")

    def cancel(self, provider_subscription_id: str) -> None:
        self._request("PUT", f"/preapproval/{urlparse.quote(provider_subscription_id, safe='')}", {"status": "cancelled"})

    def detach_payment_method(self, payment_method_ref: str) -> None:
        # preapprovals are only revoked through cancel()
        logger.info("mercadopago payment method %s unlinked locally", payment_method_ref)

    def create_setup_intent(self, email: str, name: str | None = None) -> SetupIntentResult:
        raise UnsupportedOperation("MercadoPago valida la tarjeta al autorizar el preapproval")

    def verify_payment_method(self, payment_method_ref: str) -> PaymentMethodCheck:
        # card already validated when the preapproval was authorized
        return PaymentMethodCheck(verified=True)

    def fetch_resource(self, topic: str, data_id: str) -> dict:
        rid = urlparse.quote(data_id, safe="")
        paths = {
            "subscription_preapproval": f"/preapproval/{rid}",
            "subscription_preapproval_plan": f"/preapproval_plan/{rid}",
            "subscription_authorized_payment": f"/authorized_payments/{rid}",
            "payment": f"/v1/payments/{rid}",
        }
        return self._request("GET", paths.get(topic, f"/preapproval/{rid}"))

    def parse_webhook(self, headers: Mapping[str, str], raw_body: bytes, query: Mapping[str, str]) -> WebhookEnvelope | None:
        body: dict = {}
        if raw_body:
            try:
                parsed = json.loads(raw_body)
            except ValueError:
                logger.warning("mercadopago webhook body is not JSON, using query params")
                parsed = None
            body = parsed if isinstance(parsed, dict) else {}
        topic, data_id = _mp_notification_ids(body, query)
        if not data_id:
            return None

        secret = settings.MP_WEBHOOK_SECRET
        if secret:
            ok = verify_mp_signature(
                headers.get("x-signature"),
                headers.get("x-request-id"),
                data_id,
                secret,
                settings.MP_WEBHOOK_MAX_AGE_SECONDS,
            )
            if not ok:
                raise WebhookSignatureError("Firma de webhook invalida")
        elif settings.MP_REQUIRE_WEBHOOK_SIGNATURE:
            raise WebhookSignatureError("MP_WEBHOOK_SECRET no configurado")

        topic = topic or "subscription_preapproval"
        return WebhookEnvelope(
            provider=self.provider_code,
            event_key=f"{topic}:{data_id}",
            event_type=topic,
            payload={"topic": topic, "data_id": data_id, "body": body},
        )

    def resolve_event(self, envelope: WebhookEnvelope) -> BillingEvent:
        topic = envelope.payload["topic"]
        data_id = envelope.payload["data_id"]
        resource = self.fetch_resource(topic, data_id)
        payment = resource.get("payment") if isinstance(resource.get("payment"), dict) else {}
        if topic == "subscription_authorized_payment" and payment.get("id") and not resource.get("card"):
            resource = {**resource, **self._payment_card_fields(str(payment["id"]))}
        return mp_resource_to_event(topic, data_id, resource)

    def _payment_card_fields(self, payment_id: str) -> dict:
        # authorized payments only link the payment; the card lives on /v1/payments
        try:
            details = self.fetch_resource("payment", payment_id)
        except ProviderError as exc:
            logger.warning("mercadopago payment %s card lookup failed: %s", payment_id, exc.detail)
            return {}
        return {key: details[key] for key in ("card", "payment_method_id") if details.get(key)}


def get_provider(provider_code: str | None) -> PaymentProvider:
    code = (provider_code or "").strip().lower()
    if code == "stripe":
        return StripeProvider()
    if code == "mercadopago":
        return MercadoPagoProvider()
    raise ValidationFailed("provider invalido (usa stripe|mercadopago)")
