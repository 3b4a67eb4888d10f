from __future__ import annotations

import logging

import sqlalchemy as sa
from sqlalchemy.orm import Session

from app.core.errors import NotFoundError, ProviderError, ValidationFailed
from app.services.billing_provider import VALID_PROVIDERS, PaymentProvider, get_provider
from app.services.companies import require_active_member
from app.services.versioning import update_versioned

logger = logging.getLogger(__name__)

METHOD_TYPE_BY_PROVIDER = {"stripe": "card", "mercadopago": "mercadopago"}


def _normalize_provider(provider: str | None) -> str:
    raw = (provider or "").strip().lower()
    if raw not in VALID_PROVIDERS:
        raise ValidationFailed("provider invalido (usa stripe|mercadopago)")
    return raw


def payment_pointer_changes(provider: str, payment_method_ref: str) -> dict:
    """Exactly one provider pointer is populated on the subscription."""
    if provider == "stripe":
        return {"stripe_payment_method_id": payment_method_ref, "mp_preapproval_id": None}
    return {"mp_preapproval_id": payment_method_ref, "stripe_payment_method_id": None}


def _subscription_id(db: Session, company_id):
    row = db.execute(
        sa.text("SELECT id FROM subscriptions WHERE company_id=:c"),
        {"c": str(company_id)},
    ).mappings().first()
    return row["id"] if row else None


def attach_company_payment_method(
    db: Session,
    company_id,
    *,
    provider: str,
    payment_method_ref: str,
    brand: str | None = None,
    last4: str | None = None,
    exp_month: int | None = None,
    exp_year: int | None = None,
    holder_name: str | None = None,
) -> dict:
    ref_column = "stripe_payment_method_id" if provider == "stripe" else "mp_preapproval_id"
    row = db.execute(
        sa.text(
            f"""
            INSERT INTO company_payment_methods (
                company_id, type, {ref_column}, brand, last4, exp_month, exp_year, holder_name, is_default
            )
            SELECT
                :c, :type, :ref, :brand, :last4, :exp_month, :exp_year, :holder,
                NOT EXISTS (
                    SELECT 1 FROM company_payment_methods WHERE company_id=:c AND is_default
                )
            RETURNING id, is_default
            """
        ),
        {
            "c": str(company_id),
            "type": METHOD_TYPE_BY_PROVIDER[provider],
            "ref": payment_method_ref,
            "brand": brand,
            "last4": last4,
            "exp_month": exp_month,
            "exp_year": exp_year,
            "holder": holder_name,
        },
    ).mappings().one()

    sub_id = _subscription_id(db, company_id)
    if sub_id:
        update_versioned(db, "subscriptions", sub_id, lambda _sub: payment_pointer_changes(provider, payment_method_ref))
    return {"id": str(row["id"]), "is_default": bool(row["is_default"])}


def ensure_mp_payment_method(db: Session, company_id, preapproval_id: str, card: dict | None = None) -> bool:
    """Registers the preapproval as a payment method once; returns True when a row was added."""
    existing = db.execute(
        sa.text(
            """
            SELECT id FROM company_payment_methods
            WHERE company_id=:c AND mp_preapproval_id=:p
            """
        ),
        {"c": str(company_id), "p": preapproval_id},
    ).mappings().first()
    card = card or {}
    if existing:
        if card.get("last4"):
            db.execute(
                sa.text(
                    """
                    UPDATE company_payment_methods
                    SET brand=:brand, last4=:last4, exp_month=:exp_month, exp_year=:exp_year,
                        holder_name=COALESCE(:holder, holder_name), updated_at=now()
                    WHERE id=:id
                    """
                ),
                {
                    "id": existing["id"],
                    "brand": card.get("brand"),
                    "last4": card.get("last4"),
                    "exp_month": card.get("exp_month"),
                    "exp_year": card.get("exp_year"),
                    "holder": card.get("holder_name"),
                },
            )
        return False
    attach_company_payment_method(
        db,
        company_id,
        provider="mercadopago",
        payment_method_ref=preapproval_id,
        brand=card.get("brand"),
        last4=card.get("last4"),
        exp_month=card.get("exp_month"),
        exp_year=card.get("exp_year"),
        holder_name=card.get("holder_name"),
    )
    return True


def save_payment_method(
    db: Session,
    *,
    provider: str,
    payment_method_ref: str,
    email: str | None = None,
    company_id=None,
    user_id=None,
    name: str | None = None,
    billing_country: str | None = None,
    brand: str | None = None,
    last4: str | None = None,
    exp_month: int | None = None,
    exp_year: int | None = None,
) -> dict:
    provider = _normalize_provider(provider)
    ref = (payment_method_ref or "").strip()
    if not ref:
        raise ValidationFailed("payment_method_ref es requerido")

    if company_id is None:
        mail = (email or "").strip().lower()
        if not mail:
            raise ValidationFailed("email o company_id es requerido")
        row = db.execute(
            sa.text(
                """
                INSERT INTO signup_payment_methods (
                    email, name, billing_country, provider, payment_method_ref, brand, last4, exp_month, exp_year
                )
                VALUES (:e, :name, :country, :provider, :ref, :brand, :last4, :exp_month, :exp_year)
                RETURNING id
                """
            ),
            {
                "e": mail,
                "name": name,
                "country": billing_country,
                "provider": provider,
                "ref": ref,
                "brand": brand,
                "last4": last4,
                "exp_month": exp_month,
                "exp_year": exp_year,
            },
        ).mappings().one()
        logger.info("payment method staged for %s (%s)", mail, provider)
        return {"ok": True, "staged": True, "id": str(row["id"]), "is_default": False}

    if user_id is None:
        raise ValidationFailed("Se requiere autenticacion para guardar en una empresa")
    require_active_member(db, user_id, company_id)
    out = attach_company_payment_method(
        db,
        company_id,
        provider=provider,
        payment_method_ref=ref,
        brand=brand,
        last4=last4,
        exp_month=exp_month,
        exp_year=exp_year,
        holder_name=name,
    )
    logger.info("payment method %s saved for company %s (%s)", out["id"], company_id, provider)
    return {"ok": True, "staged": False, **out}


def create_signup_setup_intent(*, email: str, name: str | None = None, adapter: PaymentProvider | None = None) -> dict:
    mail = (email or "").strip().lower()
    if not mail:
        raise ValidationFailed("email es requerido")
    result = (adapter or get_provider("stripe")).create_setup_intent(mail, name)
    logger.info("setup intent %s created for %s", result.setup_intent_id, mail)
    return {"client_secret": result.client_secret, "setup_intent_id": result.setup_intent_id}


def verify_staged_payment_method(
    db: Session,
    *,
    email: str,
    provider: str,
    payment_method_ref: str,
    adapter: PaymentProvider | None = None,
) -> dict:
    """Checks a staged credential with its provider and records the outcome on the row.

    A credential that was never staged is reported unverified without
    contacting the provider.
    """
    provider = _normalize_provider(provider)
    mail = (email or "").strip().lower()
    ref = (payment_method_ref or "").strip()
    if not mail or not ref:
        raise ValidationFailed("email y payment_method_ref son requeridos")

    staged = db.execute(
        sa.text(
            """
            SELECT id
            FROM signup_payment_methods
            WHERE lower(email)=:e AND provider=:p AND payment_method_ref=:ref
            ORDER BY created_at DESC
            LIMIT 1
            """
        ),
        {"e": mail, "p": provider, "ref": ref},
    ).mappings().first()
    if not staged:
        logger.warning("verify requested for unknown %s payment method of %s", provider, mail)
        return {"ok": True, "verified": False, "error": "Metodo de pago no registrado"}

    check = (adapter or get_provider(provider)).verify_payment_method(ref)
    card = check.card or {}
    db.execute(
        sa.text(
            """
            UPDATE signup_payment_methods
            SET payment_verified=:v, payment_error=:err,
                brand=COALESCE(:brand, brand), last4=COALESCE(:last4, last4),
                exp_month=COALESCE(:exp_month, exp_month), exp_year=COALESCE(:exp_year, exp_year)
            WHERE id=:id
            """
        ),
        {
            "id": staged["id"],
            "v": check.verified,
            "err": check.error,
            "brand": card.get("brand"),
            "last4": card.get("last4"),
            "exp_month": card.get("exp_month"),
            "exp_year": card.get("exp_year"),
        },
    )
    if not check.verified:
        logger.warning("payment method of %s not verified: %s", mail, check.error)
    return {"ok": True, "verified": check.verified, "error": check.error}


def link_staged_payment_method(db: Session, *, email: str, provider: str, company_id) -> dict | None:
    staged = db.execute(
        sa.text(
            """
            SELECT id, name, payment_method_ref, brand, last4, exp_month, exp_year
            FROM signup_payment_methods
            WHERE lower(email)=lower(:e) AND provider=:p AND linked_to_company_id IS NULL
            ORDER BY created_at DESC
            LIMIT 1
            """
        ),
        {"e": email, "p": provider},
    ).mappings().first()
    if not staged:
        return None
    out = attach_company_payment_method(
        db,
        company_id,
        provider=provider,
        payment_method_ref=staged["payment_method_ref"],
        brand=staged["brand"],
        last4=staged["last4"],
        exp_month=staged["exp_month"],
        exp_year=staged["exp_year"],
        holder_name=staged["name"],
    )
    db.execute(
        sa.text("UPDATE signup_payment_methods SET linked_to_company_id=:c WHERE id=:id"),
        {"c": str(company_id), "id": staged["id"]},
    )
    return out


def delete_payment_method(db: Session, *, user_id, method_id) -> dict:
    method = db.execute(
        sa.text(
            """
            SELECT id, company_id, type, stripe_payment_method_id, mp_preapproval_id, is_default
            FROM company_payment_methods
            WHERE id=:id
            """
        ),
        {"id": str(method_id)},
    ).mappings().first()
    if not method:
        raise NotFoundError("Metodo no encontrado")
    require_active_member(db, user_id, method["company_id"])

    stripe_ref = method["stripe_payment_method_id"]
    mp_ref = method["mp_preapproval_id"]
    if method["type"] == "card" and stripe_ref:
        try:
            get_provider("stripe").detach_payment_method(stripe_ref)
        except ProviderError as exc:
            logger.warning("stripe detach failed for %s: %s", stripe_ref, exc.detail)

    def _clear_pointer(sub: dict) -> dict:
        changes = {}
        if stripe_ref and sub["stripe_payment_method_id"] == stripe_ref:
            changes["stripe_payment_method_id"] = None
        if mp_ref and sub["mp_preapproval_id"] == mp_ref:
            changes["mp_preapproval_id"] = None
        return changes

    sub_id = _subscription_id(db, method["company_id"])
    if sub_id:
        update_versioned(db, "subscriptions", sub_id, _clear_pointer)

    db.execute(sa.text("DELETE FROM company_payment_methods WHERE id=:id"), {"id": method["id"]})

    promoted = None
    if method["is_default"]:
        promoted = db.execute(
            sa.text(
                """
                UPDATE company_payment_methods
                SET is_default=true, updated_at=now()
                WHERE id = (
                    SELECT id FROM company_payment_methods
                    WHERE company_id=:c
                    ORDER BY created_at ASC
                    LIMIT 1
                )
                RETURNING id
                """
            ),
            {"c": method["company_id"]},
        ).scalar()
    return {"ok": True, "deleted_id": str(method["id"]), "new_default_id": (str(promoted) if promoted else None)}
