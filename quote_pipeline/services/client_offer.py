"""
Client Offer projection.

Derived, editable line items seeded from a request's products.  Once the
request is GM-approved the lines are frozen (``linesLocked``): quantity and
unit price become part of the approved commercial terms and can no longer
change.  Locking is one-way.

Usage:
    from quote_pipeline.services.client_offer import build_offer, lock_offer_lines

    offer = build_offer(request_data)                 # seed or normalise
    offer = lock_offer_lines(request_data, offer)     # on GM approval
"""

from __future__ import annotations

import logging

from quote_pipeline.core.exceptions import ValidationError
from quote_pipeline.services.request_aggregate import (
    ARTICULATION_TYPES,
    AXLE_LOCATIONS,
    CONFIGURATION_TYPES,
    clamp_price,
    clamp_quantity,
    resolve_other,
    round2,
)

logger = logging.getLogger(__name__)

_LABELS = {
    "front": "Front",
    "rear": "Rear",
    "straight_axle": "Straight Axle",
    "steering_axle": "Steering Axle",
    "tandem": "Tandem",
    "tridem": "Tridem",
    "boggie": "Boggie",
}


def _label(value: str | None, other: str | None, known: tuple[str, ...]) -> str:
    if value in known and value != "other":
        return _LABELS.get(value, value)
    text = resolve_other(value, other)
    if text.lower() in ("-", "n/a", "na"):
        return ""
    return text


def product_type_label(product: dict) -> str:
    """``Front / Steering Axle / Tandem`` style description of a product."""
    parts = [
        _label(product.get("axleLocation"), product.get("axleLocationOther"), AXLE_LOCATIONS),
        _label(product.get("articulationType"), product.get("articulationTypeOther"), ARTICULATION_TYPES),
        _label(product.get("configurationType"), product.get("configurationTypeOther"), CONFIGURATION_TYPES),
    ]
    return " / ".join(p for p in parts if p)


def _filled(value) -> bool:
    return value is not None and str(value).strip() != ""


def seed_lines(request: dict) -> list[dict]:
    """One included line per product."""
    lines = []
    for index, product in enumerate(request.get("products") or []):
        details = []
        if product.get("tyreSize"):
            details.append(f"Tyre: {product['tyreSize']}")
        if _filled(product.get("loadsKg")):
            details.append(f"Loads: {product['loadsKg']}")
        if _filled(product.get("speedsKmh")):
            details.append(f"Speed: {product['speedsKmh']}")
        if _filled(product.get("trackMm")):
            details.append(f"Track: {product['trackMm']}")
        if product.get("brakeType"):
            details.append(f"Brake: {product['brakeType']}")
        if product.get("suspension"):
            details.append(f"Suspension: {product['suspension']}")
        lines.append({
            "id": f"product-{index + 1}",
            "include": True,
            "sourceProductIndex": index,
            "description": (
                product_type_label(product)
                or request.get("applicationVehicle")
                or f"Item {index + 1}"
            ),
            "specification": " | ".join(details),
            "quantity": clamp_quantity(product.get("quantity")),
            "unitPrice": None,
            "remark": "",
        })
    return lines


def _normalize_line(raw: dict, index: int) -> dict:
    source_index = raw.get("sourceProductIndex")
    if not (isinstance(source_index, int) and not isinstance(source_index, bool) and source_index >= 0):
        source_index = None
    line_id = str(raw.get("id") or "").strip() or f"line-{index + 1}"
    return {
        "id": line_id,
        "include": raw.get("include") is not False,
        "sourceProductIndex": source_index,
        "description": raw.get("description") if isinstance(raw.get("description"), str) else "",
        "specification": raw.get("specification") if isinstance(raw.get("specification"), str) else "",
        "quantity": clamp_quantity(raw.get("quantity")),
        "unitPrice": clamp_price(raw.get("unitPrice")),
        "remark": raw.get("remark") if isinstance(raw.get("remark"), str) else "",
    }


def normalize_offer_config(request: dict, raw) -> dict:
    """Clamp and complete an offer config; seeds lines when none are given."""
    source = raw if isinstance(raw, dict) else {}
    raw_lines = source.get("lines")
    if isinstance(raw_lines, list) and raw_lines:
        lines = [_normalize_line(line if isinstance(line, dict) else {}, i) for i, line in enumerate(raw_lines)]
    else:
        lines = seed_lines(request)
    return {
        "offerNumber": str(source.get("offerNumber") or request.get("id") or "").strip(),
        "recipientName": str(source.get("recipientName") or request.get("clientName") or "").strip(),
        "introText": str(source.get("introText") or "").strip(),
        "lines": lines,
        "linesLocked": bool(source.get("linesLocked")),
    }


def build_offer(request: dict) -> dict:
    """Current offer config for ``request`` (stored one, or freshly seeded)."""
    return normalize_offer_config(request, request.get("clientOfferConfig"))


def lock_offer_lines(request: dict, offer: dict | None = None) -> dict:
    """Freeze lines against the approved commercial terms.

    Missing quantities take the product quantity, then the request's
    expectedQty.  A single included line without a unit price takes the
    approved sales final price.
    """
    config = normalize_offer_config(request, offer if offer is not None else request.get("clientOfferConfig"))
    if config["linesLocked"]:
        return config

    products = request.get("products") or []
    sales = request.get("sales") or {}
    included = [line for line in config["lines"] if line["include"]]

    for line in config["lines"]:
        if line["quantity"] is None:
            product_qty = None
            idx = line["sourceProductIndex"]
            if idx is not None and idx < len(products):
                product_qty = clamp_quantity(products[idx].get("quantity"))
            line["quantity"] = product_qty if product_qty is not None else clamp_quantity(request.get("expectedQty"))
    if len(included) == 1 and included[0]["unitPrice"] is None:
        included[0]["unitPrice"] = clamp_price(sales.get("finalPrice"))

    config["linesLocked"] = True
    logger.info("Offer lines locked request=%s lines=%d", request.get("id"), len(config["lines"]))
    return config


def check_locked_edit(previous: dict | None, incoming: dict) -> None:
    """Reject changes to quantity/unitPrice (or the line set) of locked lines."""
    if not previous or not previous.get("linesLocked"):
        return
    if not incoming.get("linesLocked"):
        raise ValidationError("Offer lines are locked after GM approval", field="clientOfferConfig.linesLocked")
    before = {line["id"]: line for line in previous.get("lines") or []}
    after = {line["id"]: line for line in incoming.get("lines") or []}
    if set(before) != set(after):
        raise ValidationError("Locked offer lines cannot be added or removed", field="clientOfferConfig.lines")
    for line_id, old in before.items():
        new = after[line_id]
        for key in ("quantity", "unitPrice", "include"):
            if new.get(key) != old.get(key):
                raise ValidationError(
                    f"Offer line {line_id} {key} is locked after GM approval",
                    field=f"clientOfferConfig.lines.{key}",
                )


def offer_totals(offer: dict) -> dict:
    """Per-line and overall totals over included, fully priced lines."""
    line_totals = {}
    total = 0.0
    for line in offer.get("lines") or []:
        if not line.get("include"):
            continue
        qty, price = line.get("quantity"), line.get("unitPrice")
        if qty is None or price is None:
            continue
        amount = round2(qty * price)
        line_totals[line["id"]] = amount
        total += amount
    return {"lines": line_totals, "total": round2(total)}
