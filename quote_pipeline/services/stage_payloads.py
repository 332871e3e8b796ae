"""
Stage payloads: typed data carried by lifecycle transitions.

Each transition that produces data has its own payload variant, parsed and
validated at the guard boundary.  Parsing sees the *effective* record: the
stored stage block overlaid with the fields sent in the command, so a value
saved earlier through a field update counts, and a value edited into an
invalid state is caught.

Parsers run the full stage normalizer and raise ``ValidationError`` (first
failing field); the lifecycle turns that into a guard result.  A parsed
payload already holds the normalized block, so ``apply`` only assigns and
cannot fail.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime

from quote_pipeline.core.exceptions import ValidationError
from quote_pipeline.services.client_offer import lock_offer_lines
from quote_pipeline.services.request_aggregate import (
    VAT_MODES,
    clamp_price,
    normalize_attachments,
    normalize_costing,
    normalize_design,
    normalize_sales,
    parse_optional_number,
    validate_payment_terms,
    with_term_count,
)
from quote_pipeline.utils.helpers import parse_date, to_iso


def _text(value) -> str:
    return "" if value is None else str(value).strip()


def _block(record: dict, name: str) -> dict:
    value = record.get(name)
    return dict(value) if isinstance(value, dict) else {}


def _comment(payload: dict) -> str | None:
    return _text(payload.get("comment")) or None


# ═════════════════════════════════════════════════════════════════════════════
# Payload variants
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class CommentOnly:
    """Transitions without structured data; the comment is optional."""
    comment: str | None = None

    def apply(self, record: dict, principal, now: datetime) -> dict:
        return dict(record)


@dataclass(frozen=True)
class ClarificationRequest:
    comment: str
    design: dict = field(default_factory=dict)

    def apply(self, record: dict, principal, now: datetime) -> dict:
        return {**record, "design": dict(self.design)}


@dataclass(frozen=True)
class Resubmission:
    clarification_response: str = ""
    comment: str | None = None
    sales: dict | None = None

    def apply(self, record: dict, principal, now: datetime) -> dict:
        if self.sales is None:
            return dict(record)
        return {**record, "sales": dict(self.sales)}


@dataclass(frozen=True)
class Acceptance:
    acceptance_message: str
    expected_reply_date: date
    comment: str | None = None
    design: dict = field(default_factory=dict)

    def apply(self, record: dict, principal, now: datetime) -> dict:
        return {**record, "design": dict(self.design)}


@dataclass(frozen=True)
class DesignResult:
    comments: str
    attachments: tuple = ()
    comment: str | None = None
    design: dict = field(default_factory=dict)

    def apply(self, record: dict, principal, now: datetime) -> dict:
        return {**record, "design": dict(self.design)}


@dataclass(frozen=True)
class CostingResult:
    costing: dict = field(default_factory=dict)
    comment: str | None = None

    def apply(self, record: dict, principal, now: datetime) -> dict:
        return {**record, "costing": dict(self.costing)}


@dataclass(frozen=True)
class SalesSubmission:
    sales: dict = field(default_factory=dict)
    comment: str | None = None

    def apply(self, record: dict, principal, now: datetime) -> dict:
        return {**record, "sales": dict(self.sales)}


@dataclass(frozen=True)
class GmDecision:
    decision: str
    comment: str | None = None
    offer: dict | None = None

    def apply(self, record: dict, principal, now: datetime) -> dict:
        out = dict(record)
        out["gm"] = {
            "decision": self.decision,
            "comment": self.comment or "",
            "decidedAt": to_iso(now),
            "decidedBy": principal.id,
            "decidedByName": principal.name,
        }
        if self.offer is not None:
            out["clientOfferConfig"] = dict(self.offer)
        return out


# ═════════════════════════════════════════════════════════════════════════════
# Shared field checks
# ═════════════════════════════════════════════════════════════════════════════

def _require_positive(value, name: str) -> float:
    """Price after clamping and rounding; 0.001 rounds to 0 and is rejected."""
    parsed = clamp_price(value)
    if parsed is None:
        raise ValidationError(f"{name} is required", field=name)
    if parsed <= 0:
        raise ValidationError(f"{name} must be greater than 0", field=name)
    return parsed


def _require_number(value, name: str) -> float:
    parsed = parse_optional_number(value)
    if parsed is None:
        raise ValidationError(f"{name} must be a number", field=name)
    return parsed


def _check_vat(effective: dict) -> None:
    mode = _text(effective.get("vatMode")) or "without"
    if mode not in VAT_MODES:
        raise ValidationError("vatMode must be 'with' or 'without'", field="vatMode")
    rate = effective.get("vatRate")
    if mode == "with":
        parsed = parse_optional_number(rate)
        if parsed is None:
            raise ValidationError("vatRate is required when vatMode is 'with'", field="vatRate")
        if parsed < 0 or parsed > 100:
            raise ValidationError("vatRate must be between 0 and 100", field="vatRate")
    elif rate not in (None, ""):
        raise ValidationError("vatRate must be empty when vatMode is 'without'", field="vatRate")


def _check_incoterm(effective: dict) -> None:
    incoterm = _text(effective.get("incoterm"))
    if not incoterm:
        raise ValidationError("incoterm is required", field="incoterm")
    if incoterm == "other" and not _text(effective.get("incotermOther")):
        raise ValidationError("incotermOther is required when incoterm is 'other'", field="incotermOther")


# ═════════════════════════════════════════════════════════════════════════════
# Parsers
# ═════════════════════════════════════════════════════════════════════════════

def parse_comment_only(record: dict, payload: dict, now: datetime) -> CommentOnly:
    return CommentOnly(comment=_comment(payload))


def parse_clarification(record: dict, payload: dict, now: datetime) -> ClarificationRequest:
    comment = _text(payload.get("comment"))
    if not comment:
        raise ValidationError("comment is required to request clarification", field="comment")
    design = normalize_design({**_block(record, "design"), "clarificationComment": comment})
    return ClarificationRequest(comment=comment, design=design)


def parse_resubmission(record: dict, payload: dict, now: datetime) -> Resubmission:
    response = _text(payload.get("clarificationResponse"))
    sales = None
    if response:
        sales = normalize_sales({**_block(record, "sales"), "clarificationResponse": response})
    return Resubmission(clarification_response=response, comment=_comment(payload), sales=sales)


def parse_acceptance(record: dict, payload: dict, now: datetime) -> Acceptance:
    design = _block(record, "design")
    message = _text(payload.get("acceptanceMessage", design.get("acceptanceMessage")))
    if not message:
        raise ValidationError("acceptanceMessage is required", field="acceptanceMessage")
    raw_date = payload.get("expectedReplyDate", design.get("expectedReplyDate"))
    reply_date = parse_date(raw_date)
    if reply_date is None:
        raise ValidationError("expectedReplyDate must be a valid date", field="expectedReplyDate")
    if reply_date <= now.date():
        raise ValidationError("expectedReplyDate must be in the future", field="expectedReplyDate")
    block = normalize_design({
        **design,
        "acceptanceMessage": message,
        "expectedReplyDate": reply_date.isoformat(),
    })
    return Acceptance(
        acceptance_message=message,
        expected_reply_date=reply_date,
        comment=_comment(payload),
        design=block,
    )


def parse_design_result(record: dict, payload: dict, now: datetime) -> DesignResult:
    design = _block(record, "design")
    comments = _text(payload.get("designResultComments", design.get("designResultComments")))
    attachments = normalize_attachments(
        payload.get("designResultAttachments", design.get("designResultAttachments")),
        field="designResultAttachments",
    )
    if not comments and not attachments:
        raise ValidationError(
            "designResultComments or designResultAttachments is required",
            field="designResultComments",
        )
    block = normalize_design({
        **design,
        "designResultComments": comments,
        "designResultAttachments": attachments,
    })
    return DesignResult(
        comments=comments,
        attachments=tuple(attachments),
        comment=_comment(payload),
        design=block,
    )


_COSTING_KEYS = (
    "sellingPrice", "sellingCurrency", "margin", "vatMode", "vatRate",
    "incoterm", "incotermOther", "deliveryLeadtime", "costingNotes", "costingAttachments",
)


def parse_costing(record: dict, payload: dict, now: datetime) -> CostingResult:
    sent = {k: payload[k] for k in _COSTING_KEYS if k in payload}
    effective = {**_block(record, "costing"), **sent}
    _require_positive(effective.get("sellingPrice"), "sellingPrice")
    _require_number(effective.get("margin"), "margin")
    _check_vat(effective)
    return CostingResult(costing=normalize_costing(effective), comment=_comment(payload))


_SALES_KEYS = (
    "finalPrice", "currency", "margin", "vatMode", "vatRate", "incoterm", "incotermOther",
    "expectedDeliveryDate", "warrantyPeriod", "offerValidityPeriod",
    "paymentTermCount", "paymentTerms", "feedbackComment", "salesAttachments",
)


def parse_sales_submission(record: dict, payload: dict, now: datetime) -> SalesSubmission:
    sent = with_term_count({k: payload[k] for k in _SALES_KEYS if k in payload})
    effective = {**_block(record, "sales"), **sent}
    _require_positive(effective.get("finalPrice"), "finalPrice")
    _require_number(effective.get("margin"), "margin")
    if parse_date(effective.get("expectedDeliveryDate")) is None:
        raise ValidationError("expectedDeliveryDate must be a valid date", field="expectedDeliveryDate")
    _check_incoterm(effective)
    _check_vat(effective)
    sales = normalize_sales(effective)
    validate_payment_terms(sales["paymentTerms"])
    return SalesSubmission(sales=sales, comment=_comment(payload))


def _gm_parser(decision: str):
    def parse(record: dict, payload: dict, now: datetime) -> GmDecision:
        offer = lock_offer_lines(record) if decision == "approved" else None
        return GmDecision(decision=decision, comment=_comment(payload), offer=offer)
    return parse


PAYLOAD_PARSERS = {
    "request_clarification": parse_clarification,
    "resubmit": parse_resubmission,
    "accept": parse_acceptance,
    "save_design_result": parse_design_result,
    "submit_costing": parse_costing,
    "submit_for_approval": parse_sales_submission,
    "approve": _gm_parser("approved"),
    "reject": _gm_parser("rejected"),
}


def parse_payload(action: str, record: dict, payload: dict | None, now: datetime):
    """Parse and validate the payload for ``action``; raises ValidationError."""
    parser = PAYLOAD_PARSERS.get(action, parse_comment_only)
    return parser(record, payload or {}, now)


def ledger_comment(payload_obj) -> str | None:
    """Comment recorded on the ledger entry for this transition."""
    if isinstance(payload_obj, Acceptance):
        return payload_obj.comment or payload_obj.acceptance_message
    if isinstance(payload_obj, Resubmission):
        return payload_obj.comment or payload_obj.clarification_response or None
    return getattr(payload_obj, "comment", None)
