"""
Customer Request Pipeline
Request blueprint: the backing store consumed by the synchronization layer.

Endpoints:
    GET    /api/v1/requests                  full records
    GET    /api/v1/requests/summary          summary records (polled every 30s)
    GET    /api/v1/requests/search?q=&limit= summary-shaped matches
    GET    /api/v1/requests/<id>             full record
    GET    /api/v1/requests/<id>/offer       client offer + totals
    POST   /api/v1/requests                  create (sales, admin)
    PUT    /api/v1/requests/<id>             field update (+ optional edited marker)
    POST   /api/v1/requests/<id>/status      guarded lifecycle transition
    DELETE /api/v1/requests/<id>             hard delete (admin)

Every write returns the authoritative full record.
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from quote_pipeline.auth import current_principal, role_required
from quote_pipeline.blueprints import get_json_body, register_error_handlers
from quote_pipeline.services import request_service
from quote_pipeline.services.client_offer import build_offer, offer_totals
from quote_pipeline.utils.errors import E, api_error
from quote_pipeline.utils.helpers import db_commit_or_error

logger = logging.getLogger(__name__)

request_bp = Blueprint("requests", __name__, url_prefix="/api/v1/requests")
register_error_handlers(request_bp)


def _invalid_body():
    return api_error(E.VALIDATION_INVALID, "Invalid JSON body")


# ═════════════════════════════════════════════════════════════════════════
# READS
# ═════════════════════════════════════════════════════════════════════════

@request_bp.route("", methods=["GET"])
def list_requests():
    return jsonify(request_service.list_full(current_principal())), 200


@request_bp.route("/summary", methods=["GET"])
def list_request_summaries():
    """Summary shape only.  Query params: status."""
    return jsonify(request_service.list_summaries(request.args.get("status"))), 200


@request_bp.route("/search", methods=["GET"])
def search_requests():
    default_limit = current_app.config.get("SEARCH_DEFAULT_LIMIT", 20)
    limit = request_service.clamp_limit(request.args.get("limit"), default_limit)
    return jsonify(request_service.search_requests(request.args.get("q", ""), limit)), 200


@request_bp.route("/<rid>", methods=["GET"])
def get_request(rid):
    req = request_service.get_request(rid)
    return jsonify(request_service.serialize(req, current_principal())), 200


@request_bp.route("/<rid>/offer", methods=["GET"])
def get_request_offer(rid):
    req = request_service.get_request(rid)
    offer = build_offer(req.to_dict())
    return jsonify({"offer": offer, "totals": offer_totals(offer)}), 200


# ═════════════════════════════════════════════════════════════════════════
# WRITES
# ═════════════════════════════════════════════════════════════════════════

@request_bp.route("", methods=["POST"])
def create_request():
    body = get_json_body()
    if body is None:
        return _invalid_body()
    principal = current_principal()
    req = request_service.create_request(body, principal)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(request_service.serialize(req, principal)), 201


@request_bp.route("/<rid>", methods=["PUT"])
def update_request(rid):
    body = get_json_body()
    if body is None:
        return _invalid_body()
    principal = current_principal()
    req = request_service.get_request(rid)
    request_service.update_request(req, body, principal)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(request_service.serialize(req, principal)), 200


@request_bp.route("/<rid>/status", methods=["POST"])
def transition_request(rid):
    """
    Body: {action | status, comment?, payload?}.

    ``userId`` / ``userName`` are accepted but the ledger records the
    authenticated principal.
    """
    body = get_json_body()
    if body is None:
        return _invalid_body()
    principal = current_principal()
    req = request_service.get_request(rid)
    request_service.transition_request(req, body, principal)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(request_service.serialize(req, principal)), 200


@request_bp.route("/<rid>", methods=["DELETE"])
@role_required("admin")
def delete_request(rid):
    req = request_service.get_request(rid)
    request_service.delete_request(req, current_principal())
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"deleted": rid}), 200
