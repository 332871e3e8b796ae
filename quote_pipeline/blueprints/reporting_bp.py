"""
Customer Request Pipeline
Reporting blueprint: read-only projections over request history.

Endpoints:
    GET /api/v1/performance/overview?from=&to=&groupBy=day|week|month
    GET /api/v1/requests/status-integrity?limit=
"""

from flask import Blueprint, jsonify, request

from quote_pipeline.blueprints import register_error_handlers
from quote_pipeline.core.exceptions import ValidationError
from quote_pipeline.services import reporting
from quote_pipeline.utils.errors import E, api_error

reporting_bp = Blueprint("reporting", __name__, url_prefix="/api/v1")
register_error_handlers(reporting_bp)


@reporting_bp.route("/performance/overview", methods=["GET"])
def performance_overview():
    """
    Throughput and lead time for a range.  400 when from/to are missing,
    unparseable or reversed.
    """
    try:
        start, end, group_by = reporting.parse_range(
            request.args.get("from", "").strip(),
            request.args.get("to", "").strip(),
            request.args.get("groupBy", "day").strip(),
        )
    except ValidationError as exc:
        return api_error(E.VALIDATION_INVALID, str(exc), details=exc.details)
    return jsonify(reporting.performance_overview(start, end, group_by)), 200


@reporting_bp.route("/requests/status-integrity", methods=["GET"])
def status_integrity():
    return jsonify(reporting.status_integrity_report(request.args.get("limit"))), 200
