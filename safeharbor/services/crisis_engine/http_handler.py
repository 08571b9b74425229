"""Crisis Engine HTTP handler - incident, resource and responder endpoints.

Thin adapter over the engine services. Caller identity comes from the
X-User-Id and X-User-Role headers set by the upstream auth layer.

Typed engine errors map to status codes:
    NotFoundError -> 404, ConflictError -> 409, ValidationError -> 400,
    UnauthorizedError -> 403, anything else -> 500 (logged).
"""
import logging
import os
from datetime import datetime
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from safeharbor.shared.errors import (
    ConflictError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from safeharbor.shared.models import CrisisType, UrgencyLevel
from safeharbor.shared.utils import configure_pii_salt, hash_pii
from safeharbor.services.detection_service import ConversationMessage, crisis_type_from_string
from safeharbor.services.resource_service import ResourceSearch
from safeharbor.services.responder_service import ResponderFilters, ResponderProfile
from .bootstrap import CrisisServices, build_services
from .orchestrator import IncidentIntake, Requester

logger = logging.getLogger(__name__)

ERROR_STATUS = (
    (NotFoundError, 404),
    (ConflictError, 409),
    (ValidationError, 400),
    (UnauthorizedError, 403),
)


def _body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("JSON request body required")
    return data


def _requester() -> Requester:
    subject_id = request.headers.get("X-User-Id")
    if not subject_id:
        raise UnauthorizedError("Missing X-User-Id")
    return Requester(subject_id=subject_id, role=request.headers.get("X-User-Role", "USER"))


def _require_elevated(services: CrisisServices) -> Requester:
    requester = _requester()
    if requester.role.upper() not in services.orchestrator.config.elevated_roles:
        raise UnauthorizedError("Elevated role required")
    return requester


def _crisis_type(value: Optional[str], required: bool = True) -> Optional[CrisisType]:
    if not value:
        if required:
            raise ValidationError("crisis_type is required")
        return None
    crisis_type = crisis_type_from_string(value)
    if crisis_type is None:
        raise ValidationError(f"Unknown crisis type: {value}")
    return crisis_type


def _urgency(value: Optional[str]) -> Optional[UrgencyLevel]:
    if not value:
        return None
    try:
        return UrgencyLevel(str(value).upper())
    except ValueError as e:
        raise ValidationError(f"Unknown urgency level: {value}") from e


def _timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid timestamp: {value}") from e


def _flag(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    return value.strip().lower() in ("1", "true", "yes")


def _limit(default: int) -> int:
    try:
        return max(1, int(request.args.get("limit", default)))
    except ValueError as e:
        raise ValidationError("limit must be an integer") from e


def create_app(services: Optional[CrisisServices] = None) -> Flask:
    """Build the Flask app around a set of engine services."""
    services = services or build_services()
    app = Flask(__name__)

    # ------------------------------------------------------------------
    # Errors
    # ------------------------------------------------------------------

    for error_cls, status in ERROR_STATUS:
        def handler(error, status=status):
            return jsonify({"error": str(error)}), status
        app.register_error_handler(error_cls, handler)

    @app.errorhandler(Exception)
    def handle_unexpected(error):
        if isinstance(error, HTTPException):
            return jsonify({"error": error.description}), error.code
        logger.error(
            "CRISIS_HTTP_ERROR",
            extra={
                "path": request.path,
                "error": str(error),
                "error_type": type(error).__name__,
            }
        )
        return jsonify({"error": "Internal server error"}), 500

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    @app.route("/health", methods=["GET"])
    def health():
        """Health check endpoint."""
        return jsonify({
            "status": "healthy",
            "service": "crisis-engine",
        }), 200

    @app.route("/ready", methods=["GET"])
    def ready():
        """Readiness check; includes the database when one is configured."""
        if services.connection_manager is None:
            return jsonify({"status": "ready", "backend": "memory"}), 200
        db = services.connection_manager.health_check()
        if not db.get("healthy"):
            return jsonify({"status": "not_ready", "database": db}), 503
        return jsonify({"status": "ready", "backend": "postgresql"}), 200

    # ------------------------------------------------------------------
    # Incidents
    # ------------------------------------------------------------------

    @app.route("/crisis/incident", methods=["POST"])
    def create_incident():
        """Open an incident for the calling subject.

        Request Body:
            {
                "crisis_type": "suicide",
                "urgency_level": "HIGH",          (optional)
                "description": "...",             (optional)
                "location": "Mumbai, Maharashtra", (optional)
                "contact_number": "...",          (optional)
                "preferred_language": "hi"        (optional)
            }
        """
        requester = _requester()
        data = _body()
        intake = IncidentIntake(
            subject_id=requester.subject_id,
            crisis_type=_crisis_type(data.get("crisis_type")),
            urgency_level=_urgency(data.get("urgency_level")),
            description=data.get("description"),
            location=data.get("location"),
            contact_number=data.get("contact_number"),
            preferred_language=data.get("preferred_language") or "en",
            trigger_keywords=frozenset(data.get("trigger_keywords") or ()),
        )

        logger.info(
            "INCIDENT_REQUEST_RECEIVED",
            extra={
                "subject_id_hash": hash_pii(requester.subject_id),
                "crisis_type": intake.crisis_type.value,
            }
        )
        response = services.orchestrator.create(intake)
        return jsonify(response.to_dict()), 201

    @app.route("/crisis/incident/<incident_id>", methods=["GET"])
    def get_incident(incident_id: str):
        detail = services.orchestrator.get_incident(incident_id, _requester())
        return jsonify(detail.to_dict()), 200

    @app.route("/crisis/incident/<incident_id>", methods=["PATCH"])
    def update_incident(incident_id: str):
        """Change status or resolution fields.

        Request Body:
            {"status": "RESOLVED", "resolution_notes": "..."}
        """
        requester = _requester()
        data = _body()
        services.orchestrator.get_incident(incident_id, requester)
        incident = services.orchestrator.update(incident_id, requester.subject_id, **data)
        return jsonify(incident.to_dict()), 200

    @app.route("/crisis/incidents/my", methods=["GET"])
    def my_incidents():
        requester = _requester()
        incidents = services.orchestrator.list_subject_incidents(
            requester.subject_id, limit=_limit(10)
        )
        return jsonify({"count": len(incidents), "incidents": incidents}), 200

    @app.route("/crisis/follow-ups/check", methods=["POST"])
    def check_followups():
        _require_elevated(services)
        processed = services.scheduler.sweep()
        return jsonify({"processed": processed}), 200

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    @app.route("/crisis/connection", methods=["POST"])
    def create_connection():
        """Record engagement with a resource or responder.

        Request Body:
            {"incident_id": "inc_...", "channel": "CALL", "resource_id": "..."}
        """
        requester = _requester()
        data = _body()
        incident_id = data.get("incident_id")
        if not incident_id:
            raise ValidationError("incident_id is required")
        services.orchestrator.get_incident(incident_id, requester)
        connection = services.orchestrator.connect_resource(
            incident_id,
            channel=data.get("channel") or "CHAT",
            resource_id=data.get("resource_id"),
            responder_id=data.get("responder_id"),
            performed_by=requester.subject_id,
        )
        return jsonify(connection.to_dict()), 201

    @app.route("/crisis/connection/<connection_id>", methods=["PATCH"])
    def update_connection(connection_id: str):
        """Close a connection (subject, elevated role or assigned responder).

        Request Body:
            {"outcome": "RESOLVED", "rating": 5, "feedback": "...", "notes": "..."}
        """
        requester = _requester()
        data = _body()
        services.orchestrator.authorize_connection(connection_id, requester)
        connection = services.orchestrator.close_connection(
            connection_id,
            outcome=data.get("outcome"),
            notes=data.get("notes"),
            rating=data.get("rating"),
            feedback=data.get("feedback"),
            duration_seconds=data.get("duration_seconds"),
            performed_by=requester.subject_id,
        )
        return jsonify(connection.to_dict()), 200

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    @app.route("/crisis/detect", methods=["POST"])
    def detect():
        """Request Body: {"text": "..."}"""
        text = _body().get("text") or ""
        result = services.detector.detect(text)
        data = result.to_dict()
        data["references"] = services.detector.detect_references(text).to_dict()
        return jsonify(data), 200

    @app.route("/crisis/analyze-pattern", methods=["POST"])
    def analyze_pattern():
        """Request Body: {"messages": [{"content": "...", "timestamp": "..."}]}"""
        raw = _body().get("messages")
        if not isinstance(raw, list):
            raise ValidationError("messages must be a list")
        messages = [
            ConversationMessage(
                content=str(m.get("content") or ""),
                timestamp=_timestamp(m.get("timestamp")),
            )
            for m in raw if isinstance(m, dict)
        ]
        analysis = services.analyzer.analyze_conversation(messages)
        return jsonify(analysis.to_dict()), 200

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    @app.route("/crisis/resources", methods=["GET"])
    def resources():
        """Ranked lookup when `type` is given, otherwise a filtered search.

        Query Params:
            type, location, language, limit (ranked lookup)
            region, city, language, available_24x7 (search)
        """
        crisis_type = _crisis_type(request.args.get("type"), required=False)
        if crisis_type is not None and not (
            request.args.get("region") or request.args.get("city")
            or request.args.get("available_24x7")
        ):
            found = services.matcher.for_crisis(
                crisis_type,
                location=request.args.get("location"),
                language=request.args.get("language"),
                limit=_limit(5),
            )
        else:
            found = services.matcher.search(ResourceSearch(
                crisis_type=crisis_type,
                region=request.args.get("region"),
                city=request.args.get("city"),
                language=request.args.get("language"),
                available_24x7=_flag(request.args.get("available_24x7")),
            ))
        return jsonify({"count": len(found), "resources": [r.to_dict() for r in found]}), 200

    @app.route("/crisis/resources/emergency", methods=["GET"])
    def emergency_contacts():
        return jsonify({
            "contacts": services.matcher.emergency_contacts(),
            "formatted": services.matcher.format_emergency_contacts(),
        }), 200

    @app.route("/crisis/resources/national", methods=["GET"])
    def national_resources():
        crisis_type = _crisis_type(request.args.get("type"), required=False)
        found = services.matcher.national_resources(crisis_type, limit=_limit(5))
        return jsonify({"count": len(found), "resources": [r.to_dict() for r in found]}), 200

    @app.route("/crisis/resources", methods=["POST"])
    def create_resource():
        _require_elevated(services)
        data = _body()
        name = data.pop("name", None)
        if not name:
            raise ValidationError("name is required")
        resource = services.directory.create_resource(name, **data)
        return jsonify(resource.to_dict()), 201

    @app.route("/crisis/resources/stats", methods=["GET"])
    def resource_stats():
        _require_elevated(services)
        return jsonify(services.directory.resource_stats()), 200

    @app.route("/crisis/resources/<resource_id>", methods=["PATCH"])
    def update_resource(resource_id: str):
        _require_elevated(services)
        resource = services.directory.update_resource(resource_id, **_body())
        return jsonify(resource.to_dict()), 200

    @app.route("/crisis/resources/<resource_id>/verify", methods=["POST"])
    def verify_resource(resource_id: str):
        requester = _require_elevated(services)
        resource = services.directory.verify_resource(resource_id, verified_by=requester.subject_id)
        return jsonify(resource.to_dict()), 200

    @app.route("/crisis/resources/<resource_id>", methods=["DELETE"])
    def deactivate_resource(resource_id: str):
        _require_elevated(services)
        resource = services.directory.deactivate_resource(resource_id)
        return jsonify(resource.to_dict()), 200

    # ------------------------------------------------------------------
    # Responders
    # ------------------------------------------------------------------

    @app.route("/crisis/responders/register", methods=["POST"])
    def register_responder():
        """Register the caller as a responder.

        Request Body:
            {
                "specializations": ["suicide", "panic"],
                "languages": ["en", "hi"],
                "region": "Maharashtra",
                "city": "Mumbai",
                "max_concurrent_cases": 3
            }
        """
        requester = _requester()
        data = _body()
        profile = ResponderProfile(
            specializations=frozenset(
                _crisis_type(s) for s in data.get("specializations") or ()
            ),
            languages=frozenset(data.get("languages") or ("en",)),
            region=data.get("region"),
            city=data.get("city"),
            max_concurrent_cases=data.get("max_concurrent_cases"),
            certifications=tuple(data.get("certifications") or ()),
        )
        responder = services.dispatcher.register(requester.subject_id, requester.role, profile)
        return jsonify(responder.to_dict()), 201

    @app.route("/crisis/responders/availability", methods=["PATCH"])
    def update_availability():
        """Request Body: {"is_available": true, "available_from": ISO, "available_till": ISO}"""
        requester = _requester()
        data = _body()
        if not isinstance(data.get("is_available"), bool):
            raise ValidationError("is_available must be a boolean")
        responder = services.dispatcher.update_availability(
            requester.subject_id,
            data["is_available"],
            available_from=_timestamp(data.get("available_from")),
            available_till=_timestamp(data.get("available_till")),
        )
        return jsonify(responder.to_dict()), 200

    @app.route("/crisis/responders/training", methods=["POST"])
    def complete_training():
        """Request Body: {"certificate_ids": ["cert_1"]}"""
        requester = _requester()
        data = _body()
        responder = services.dispatcher.complete_training(
            requester.subject_id, data.get("certificate_ids") or ()
        )
        return jsonify(responder.to_dict()), 200

    @app.route("/crisis/responders/<responder_id>/approve", methods=["POST"])
    def approve_responder(responder_id: str):
        requester = _require_elevated(services)
        responder = services.dispatcher.approve(responder_id, approved_by=requester.subject_id)
        return jsonify(responder.to_dict()), 200

    @app.route("/crisis/responders/profile", methods=["GET"])
    def responder_profile():
        return jsonify(services.dispatcher.get_profile(_requester().subject_id)), 200

    @app.route("/crisis/responders", methods=["GET"])
    def list_responders():
        _require_elevated(services)
        filters = ResponderFilters(
            is_active=_flag(request.args.get("is_active")),
            is_available=_flag(request.args.get("is_available")),
            region=request.args.get("region"),
            specialization=_crisis_type(request.args.get("specialization"), required=False),
        )
        found = services.dispatcher.list_responders(filters)
        return jsonify({"count": len(found), "responders": [r.to_dict() for r in found]}), 200

    return app


# Configure PII salt
pii_salt = os.getenv("PII_HASH_SALT", "default_dev_salt_change_in_production_32chars")
configure_pii_salt(pii_salt)

app = create_app()


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    port = int(os.getenv("PORT", "8003"))
    app.run(host="0.0.0.0", port=port, debug=False)
