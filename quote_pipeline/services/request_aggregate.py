"""
Request Aggregate: field-level invariants of a customer request.

Independent of the lifecycle: these rules run on every create and update,
and on the effective record before a transition payload is accepted.

Rules:
  - Studs/PCD is a tagged union: ``standard`` selections or ``special`` text.
    Only the active branch may carry data; ``switch_studs_pcd_mode`` clears
    the other branch.
  - Every selector with an ``other`` sentinel owns a ``<field>Other`` text:
    required when the selector is ``other``, empty otherwise.
  - Payment terms: 1–6 ordered installments; changing the count reflows the
    array by position and default-fills new slots.
  - Quantities are truncated integers in [0, 10000]; prices are rounded to
    2 decimals in [0, 1 000 000]; margins and percentages are rounded to
    2 decimals; VAT rates are clamped to [0, 100].

Violations raise ``ValidationError`` naming the first failing field.
Clamping is the only silent coercion.
"""

from __future__ import annotations

import logging
import math
from decimal import ROUND_HALF_UP, Decimal

from quote_pipeline.core.exceptions import ValidationError
from quote_pipeline.models.request import DEFAULT_PRIORITY, PRIORITIES

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Reference sets
# ═════════════════════════════════════════════════════════════════════════════

OTHER = "other"

AXLE_LOCATIONS = ("front", "rear", OTHER)
ARTICULATION_TYPES = ("straight_axle", "steering_axle", OTHER)
CONFIGURATION_TYPES = ("tandem", "tridem", "boggie", OTHER)
BRAKE_TYPES = ("drum", "disk", "na", "As Per ROC Standard")

STUDS_PCD_MODES = ("standard", "special")
STANDARD_STUDS_PCD_OPTIONS = {
    "STD_4_M10_84_115": "4 × M10×1.25 - PCD 84/115",
    "STD_4_M14_85_130": "4 × M14×1.5 - PCD 85/130",
    "STD_5_M16_94_140": "5 × M16×1.5 - PCD 94/140",
    "STD_6_M16_94_124": "6 × M16×1.5 - PCD 94/124",
    "STD_6_M18_160_205": "6 × M18×1.5 - PCD 160/205",
    "STD_8_M18_220_275": "8 × M18×1.5 - PCD 220/275",
    "STD_10_M22_280_330": "10 × M22×1.5 - PCD 280/330",
    "STD_ROC_STANDARD": "As Per ROC Standard",
}

ATTACHMENT_TYPES = ("rim_drawing", "picture", "spec", "other")
CURRENCIES = ("USD", "EUR", "RMB")
VAT_MODES = ("with", "without")

# Request-level selectors backed by admin lists (open sets with an "other" escape)
REQUEST_OTHER_FIELDS = (
    "applicationVehicle",
    "country",
    "workingCondition",
    "usageType",
    "environment",
)

# Product selectors backed by fixed sets
PRODUCT_SELECTORS = {
    "axleLocation": AXLE_LOCATIONS,
    "articulationType": ARTICULATION_TYPES,
    "configurationType": CONFIGURATION_TYPES,
}

MAX_LINE_QTY = 10_000
MAX_PRICE = 1_000_000
MAX_PAYMENT_TERMS = 6
PERCENT_TOLERANCE = 0.01
DEFAULT_FINISH = "Black Primer default"


# ═════════════════════════════════════════════════════════════════════════════
# Numeric coercion
# ═════════════════════════════════════════════════════════════════════════════

def parse_optional_number(value) -> float | None:
    """Number from int/float/numeric string; None for empty or unparsable input."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        text = value.strip().replace(",", ".")
        if not text:
            return None
        try:
            parsed = float(text)
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def round2(value: float) -> float:
    """Half-up rounding to 2 decimals (0.125 → 0.13)."""
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def clamp_quantity(value) -> int | None:
    parsed = parse_optional_number(value)
    if parsed is None:
        return None
    return int(min(MAX_LINE_QTY, max(0, math.trunc(parsed))))


def clamp_price(value) -> float | None:
    parsed = parse_optional_number(value)
    if parsed is None:
        return None
    return round2(min(MAX_PRICE, max(0.0, parsed)))


def clamp_vat_rate(value) -> float | None:
    parsed = parse_optional_number(value)
    if parsed is None:
        return None
    return round2(min(100.0, max(0.0, parsed)))


def round_optional(value) -> float | None:
    parsed = parse_optional_number(value)
    return None if parsed is None else round2(parsed)


def _text(value) -> str:
    if value is None:
        return ""
    return str(value).strip()


# ═════════════════════════════════════════════════════════════════════════════
# "Other" selectors
# ═════════════════════════════════════════════════════════════════════════════

def check_other_pair(
    data: dict,
    field: str,
    allowed: tuple[str, ...] | None = None,
    *,
    prefix: str = "",
) -> tuple[str, str]:
    """Validate ``field`` / ``<field>Other`` and return the cleaned pair.

    ``allowed`` restricts the selector to a fixed set; None accepts any value
    (admin-list backed selectors).
    """
    value = _text(data.get(field))
    other_field = f"{field}Other"
    other_text = _text(data.get(other_field))
    label = f"{prefix}{field}"

    if allowed is not None and value and value not in allowed:
        raise ValidationError(
            f"{label} must be one of: {', '.join(allowed)}", field=label,
        )
    if value == OTHER:
        if not other_text:
            raise ValidationError(
                f"{prefix}{other_field} is required when {field} is 'other'",
                field=f"{prefix}{other_field}",
            )
    elif other_text:
        raise ValidationError(
            f"{prefix}{other_field} must be empty unless {field} is 'other'",
            field=f"{prefix}{other_field}",
        )
    return value, other_text


def resolve_other(value: str | None, other: str | None) -> str:
    """Display value of a selector: the free text when it is ``other``."""
    if not value:
        return ""
    if value == OTHER:
        return _text(other)
    return str(value)


# ═════════════════════════════════════════════════════════════════════════════
# Attachments
# ═════════════════════════════════════════════════════════════════════════════

def normalize_attachments(raw, *, field: str = "attachments") -> list[dict]:
    """Keep the opaque attachment reference shape; ``id`` is mandatory."""
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError(f"{field} must be a list", field=field)
    out = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict) or not _text(item.get("id")):
            raise ValidationError(
                f"{field}[{index}] must be an object with an id", field=field,
            )
        kind = _text(item.get("type")) or "other"
        out.append({
            "id": _text(item.get("id")),
            "type": kind if kind in ATTACHMENT_TYPES else "other",
            "filename": _text(item.get("filename")),
            "url": _text(item.get("url")),
            "uploadedAt": item.get("uploadedAt"),
            "uploadedBy": _text(item.get("uploadedBy")),
        })
    return out


# ═════════════════════════════════════════════════════════════════════════════
# Products
# ═════════════════════════════════════════════════════════════════════════════

def empty_product() -> dict:
    return {
        "axleLocation": "",
        "axleLocationOther": "",
        "articulationType": "",
        "articulationTypeOther": "",
        "configurationType": "",
        "configurationTypeOther": "",
        "quantity": None,
        "loadsKg": None,
        "speedsKmh": None,
        "tyreSize": "",
        "trackMm": None,
        "studsPcdMode": "standard",
        "studsPcdStandardSelections": [],
        "studsPcdSpecialText": "",
        "wheelBase": "",
        "finish": DEFAULT_FINISH,
        "brakeType": None,
        "brakeSize": "",
        "brakePowerType": "",
        "brakeCertificate": "",
        "suspension": "",
        "productComments": "",
        "attachments": [],
    }


def switch_studs_pcd_mode(product: dict, mode: str) -> dict:
    """Return a copy of ``product`` in ``mode`` with the other branch cleared."""
    if mode not in STUDS_PCD_MODES:
        raise ValidationError(
            f"studsPcdMode must be one of: {', '.join(STUDS_PCD_MODES)}", field="studsPcdMode",
        )
    out = dict(product)
    out["studsPcdMode"] = mode
    if mode == "standard":
        out["studsPcdSpecialText"] = ""
        out.setdefault("studsPcdStandardSelections", [])
    else:
        out["studsPcdStandardSelections"] = []
        out.setdefault("studsPcdSpecialText", "")
    return out


def _normalize_studs_pcd(raw: dict, prefix: str) -> dict:
    mode = _text(raw.get("studsPcdMode")) or "standard"
    if mode not in STUDS_PCD_MODES:
        raise ValidationError(
            f"{prefix}studsPcdMode must be one of: {', '.join(STUDS_PCD_MODES)}",
            field=f"{prefix}studsPcdMode",
        )
    selections = raw.get("studsPcdStandardSelections") or []
    if not isinstance(selections, list):
        raise ValidationError(
            f"{prefix}studsPcdStandardSelections must be a list",
            field=f"{prefix}studsPcdStandardSelections",
        )
    selections = [str(s).strip() for s in selections if str(s).strip()]
    special = _text(raw.get("studsPcdSpecialText"))

    if mode == "standard":
        if special:
            raise ValidationError(
                f"{prefix}studsPcdSpecialText must be empty in standard mode",
                field=f"{prefix}studsPcdSpecialText",
            )
        unknown = [s for s in selections if s not in STANDARD_STUDS_PCD_OPTIONS]
        if unknown:
            raise ValidationError(
                f"{prefix}studsPcdStandardSelections has unknown option(s): {', '.join(unknown)}",
                field=f"{prefix}studsPcdStandardSelections",
            )
    elif selections:
        raise ValidationError(
            f"{prefix}studsPcdStandardSelections must be empty in special mode",
            field=f"{prefix}studsPcdStandardSelections",
        )
    # dict.fromkeys keeps first-seen order while dropping duplicates
    return {
        "studsPcdMode": mode,
        "studsPcdStandardSelections": list(dict.fromkeys(selections)),
        "studsPcdSpecialText": special,
    }


def normalize_product(raw: dict, index: int = 0) -> dict:
    """Validate and clean one product entry."""
    if not isinstance(raw, dict):
        raise ValidationError(f"products[{index}] must be an object", field="products")
    prefix = f"products[{index}]."
    product = empty_product()

    for field, allowed in PRODUCT_SELECTORS.items():
        value, other_text = check_other_pair(raw, field, allowed, prefix=prefix)
        product[field] = value
        product[f"{field}Other"] = other_text

    product.update(_normalize_studs_pcd(raw, prefix))

    brake = raw.get("brakeType")
    if brake not in (None, ""):
        if brake not in BRAKE_TYPES:
            raise ValidationError(
                f"{prefix}brakeType must be one of: {', '.join(BRAKE_TYPES)}",
                field=f"{prefix}brakeType",
            )
        product["brakeType"] = brake

    product["quantity"] = clamp_quantity(raw.get("quantity"))
    for key in ("loadsKg", "speedsKmh", "trackMm"):
        # Free-form engineering values ("3.5t") are kept as entered.
        value = raw.get(key)
        product[key] = value if value not in ("",) else None
    for key in (
        "tyreSize", "wheelBase", "brakeSize", "brakePowerType",
        "brakeCertificate", "suspension", "productComments",
    ):
        product[key] = _text(raw.get(key))
    product["finish"] = _text(raw.get("finish")) or DEFAULT_FINISH
    product["attachments"] = normalize_attachments(
        raw.get("attachments"), field=f"{prefix}attachments",
    )
    return product


# ═════════════════════════════════════════════════════════════════════════════
# Payment terms
# ═════════════════════════════════════════════════════════════════════════════

def default_payment_term(number: int) -> dict:
    return {
        "paymentNumber": number,
        "paymentName": "",
        "paymentPercent": None,
        "comments": "",
    }


def clamp_term_count(count) -> int:
    parsed = parse_optional_number(count)
    if parsed is None:
        return 1
    return int(min(MAX_PAYMENT_TERMS, max(1, math.trunc(parsed))))


def reflow_payment_terms(terms, count) -> list[dict]:
    """Resize ``terms`` to ``count`` slots, keeping existing entries by position."""
    size = clamp_term_count(count)
    source = terms if isinstance(terms, list) else []
    out = []
    for index in range(size):
        raw = source[index] if index < len(source) and isinstance(source[index], dict) else None
        if raw is None:
            out.append(default_payment_term(index + 1))
            continue
        out.append({
            "paymentNumber": index + 1,
            "paymentName": _text(raw.get("paymentName")),
            "paymentPercent": round_optional(raw.get("paymentPercent")),
            "comments": _text(raw.get("comments")),
        })
    return out


def with_term_count(block: dict) -> dict:
    """Terms sent without a count set the count to how many were sent."""
    terms = block.get("paymentTerms")
    if isinstance(terms, list) and terms and "paymentTermCount" not in block:
        return {**block, "paymentTermCount": len(terms)}
    return block


def validate_payment_terms(terms: list[dict]) -> None:
    """Every active term named with a percent, and the set summing to 100 ± 0.01."""
    if not terms:
        raise ValidationError("At least one payment term is required", field="paymentTerms")
    for term in terms:
        number = term["paymentNumber"]
        if not term["paymentName"]:
            raise ValidationError(
                f"Payment term {number} needs a name", field=f"paymentTerms[{number - 1}].paymentName",
            )
        percent = term["paymentPercent"]
        if percent is None:
            raise ValidationError(
                f"Payment term {number} needs a percentage",
                field=f"paymentTerms[{number - 1}].paymentPercent",
            )
        if percent < 0 or percent > 100:
            raise ValidationError(
                f"Payment term {number} percentage must be between 0 and 100",
                field=f"paymentTerms[{number - 1}].paymentPercent",
            )
    total = sum(t["paymentPercent"] for t in terms)
    if abs(total - 100) > PERCENT_TOLERANCE:
        raise ValidationError(
            f"Payment terms must total 100% (got {round2(total)}%)",
            field="paymentTerms",
            details={"total": round2(total)},
        )


# ═════════════════════════════════════════════════════════════════════════════
# Stage blocks
# ═════════════════════════════════════════════════════════════════════════════

def _normalize_vat(block: dict, prefix: str) -> None:
    mode = _text(block.get("vatMode")) or "without"
    if mode not in VAT_MODES:
        raise ValidationError(
            f"{prefix}vatMode must be 'with' or 'without'", field=f"{prefix}vatMode",
        )
    block["vatMode"] = mode
    block["vatRate"] = clamp_vat_rate(block.get("vatRate")) if mode == "with" else None


def _normalize_currency(block: dict, key: str, prefix: str) -> None:
    currency = _text(block.get(key)) or "EUR"
    if currency not in CURRENCIES:
        raise ValidationError(
            f"{prefix}{key} must be one of: {', '.join(CURRENCIES)}", field=f"{prefix}{key}",
        )
    block[key] = currency


def normalize_design(raw) -> dict:
    block = dict(raw) if isinstance(raw, dict) else {}
    for key in ("acceptanceMessage", "designResultComments", "clarificationComment", "designNotes"):
        block[key] = _text(block.get(key))
    block["expectedReplyDate"] = block.get("expectedReplyDate") or None
    block["designResultAttachments"] = normalize_attachments(
        block.get("designResultAttachments"), field="design.designResultAttachments",
    )
    return block


def normalize_costing(raw) -> dict:
    block = dict(raw) if isinstance(raw, dict) else {}
    prefix = "costing."
    block["sellingPrice"] = clamp_price(block.get("sellingPrice"))
    block["margin"] = round_optional(block.get("margin"))
    _normalize_currency(block, "sellingCurrency", prefix)
    _normalize_vat(block, prefix)
    value, other_text = check_other_pair(block, "incoterm", prefix=prefix)
    block["incoterm"], block["incotermOther"] = value, other_text
    for key in ("deliveryLeadtime", "costingNotes"):
        block[key] = _text(block.get(key))
    block["costingAttachments"] = normalize_attachments(
        block.get("costingAttachments"), field="costing.costingAttachments",
    )
    return block


def normalize_sales(raw) -> dict:
    block = dict(raw) if isinstance(raw, dict) else {}
    prefix = "sales."
    block["finalPrice"] = clamp_price(block.get("finalPrice"))
    block["margin"] = round_optional(block.get("margin"))
    _normalize_currency(block, "currency", prefix)
    _normalize_vat(block, prefix)
    value, other_text = check_other_pair(block, "incoterm", prefix=prefix)
    block["incoterm"], block["incotermOther"] = value, other_text
    for key in (
        "expectedDeliveryDate", "warrantyPeriod", "offerValidityPeriod",
        "feedbackComment", "clarificationResponse",
    ):
        block[key] = _text(block.get(key))
    terms = block.get("paymentTerms") or []
    count = clamp_term_count(block.get("paymentTermCount") or len(terms) or 1)
    block["paymentTermCount"] = count
    block["paymentTerms"] = reflow_payment_terms(terms, count)
    block["salesAttachments"] = normalize_attachments(
        block.get("salesAttachments"), field="sales.salesAttachments",
    )
    return block


# ═════════════════════════════════════════════════════════════════════════════
# Whole request
# ═════════════════════════════════════════════════════════════════════════════

def normalize_request(data: dict) -> dict:
    """Return a validated, clamped copy of a request document.

    Workflow fields (status, history, timestamps) pass through untouched;
    the lifecycle owns them.
    """
    from quote_pipeline.services.client_offer import normalize_offer_config

    if not isinstance(data, dict):
        raise ValidationError("Request body must be an object")
    out = dict(data)

    priority = _text(out.get("priority")) or DEFAULT_PRIORITY
    if priority not in PRIORITIES:
        raise ValidationError(
            f"priority must be one of: {', '.join(PRIORITIES)}", field="priority",
        )
    out["priority"] = priority

    for key in ("clientName", "clientContact", "city", "repeatability"):
        out[key] = _text(out.get(key))
    for field in REQUEST_OTHER_FIELDS:
        value, other_text = check_other_pair(out, field)
        out[field] = value
        out[f"{field}Other"] = other_text

    out["expectedQty"] = clamp_quantity(out.get("expectedQty"))
    selections = out.get("expectedDeliverySelections") or []
    out["expectedDeliverySelections"] = [str(s) for s in selections] if isinstance(selections, list) else []

    products = out.get("products")
    if products is None or products == []:
        products = [empty_product()]
    if not isinstance(products, list):
        raise ValidationError("products must be a list", field="products")
    out["products"] = [normalize_product(p, i) for i, p in enumerate(products)]
    out["attachments"] = normalize_attachments(out.get("attachments"))

    out["design"] = normalize_design(out.get("design"))
    out["costing"] = normalize_costing(out.get("costing"))
    out["sales"] = normalize_sales(out.get("sales"))

    if out.get("clientOfferConfig") is not None:
        out["clientOfferConfig"] = normalize_offer_config(out, out.get("clientOfferConfig"))
    return out
