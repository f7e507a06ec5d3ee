"""Flask application exposing the clinic system as a JSON API."""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Mapping

from flask import Flask, jsonify, request

from petclinic.clinic.errors import AuthorizationError, NotFoundError, ValidationError
from petclinic.clinic.membership import (
    membership_display,
    next_level_requirement,
    next_tier_info,
)
from petclinic.clinic.status import to_frontend_status
from petclinic.clinic.system import ROLES, STAFF_ROLES, ClinicSystem

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"


def _present_appointment(row: dict) -> dict:
    appointment = dict(row)
    appointment["status"] = to_frontend_status(row["status"])
    return appointment


def _present_customer(row: dict) -> dict:
    customer = dict(row)
    customer["membership_display"] = membership_display(row["membership_level"])
    return customer


def _public_user(row: dict) -> dict:
    return {key: value for key, value in row.items() if key not in ("password_hash", "api_key")}


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _require(data: Mapping[str, Any], *names: str) -> None:
    missing = [name for name in names if data.get(name) in (None, "")]
    if missing:
        raise ValidationError("Missing required fields: " + ", ".join(missing))


def _text(data: Mapping[str, Any], name: str) -> str:
    value = data.get(name)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} must be a non-empty string")
    return value.strip()


def create_app(database_path: str | None = None, config: Mapping[str, Any] | None = None) -> Flask:
    """Create and configure the Flask application.

    Settings come from the defaults below, then ``PETCLINIC_*`` environment
    variables, then ``config``; ``database_path`` wins over all of them.
    """

    app = Flask(__name__)
    app.config.from_mapping(
        SECRET_KEY="petclinic-secret",
        DATABASE_PATH="petclinic.db",
    )
    app.config.from_prefixed_env("PETCLINIC")
    if config:
        app.config.update(config)
    if database_path is not None:
        app.config["DATABASE_PATH"] = database_path
    app.json.ensure_ascii = False

    system = ClinicSystem(app.config["DATABASE_PATH"])
    app.extensions["clinic_system"] = system

    def require_role(*allowed: str) -> dict:
        return system.require_role(request.headers.get(API_KEY_HEADER), allowed)

    @app.errorhandler(NotFoundError)
    def handle_not_found(exc: NotFoundError) -> Any:
        return jsonify({"success": False, "message": str(exc)}), 404

    @app.errorhandler(ValidationError)
    def handle_validation(exc: ValidationError) -> Any:
        logger.warning("Rejected %s %s: %s", request.method, request.path, exc)
        return jsonify({"success": False, "message": str(exc)}), 400

    @app.errorhandler(AuthorizationError)
    def handle_authorization(exc: AuthorizationError) -> Any:
        logger.warning("Forbidden %s %s", request.method, request.path)
        return jsonify({"success": False, "message": str(exc)}), 403

    @app.get("/api/health")
    def health() -> Any:
        return jsonify({"success": True, "time": dt.datetime.now(dt.timezone.utc).isoformat()})

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------
    @app.post("/api/auth/login")
    def login() -> Any:
        data = _json_body()
        _require(data, "email", "password")
        session = system.login(email=_text(data, "email"), password=data["password"])
        return jsonify({"data": session})

    @app.post("/api/users")
    def register_user() -> Any:
        require_role("admin")
        data = _json_body()
        _require(data, "email", "password", "role")
        user = system.register_user(
            email=_text(data, "email"),
            password=data["password"],
            role=data["role"],
            name=data.get("name"),
            phone=data.get("phone"),
            branch_id=data.get("branch_id"),
        )
        return jsonify({"data": _public_user(user)}), 201

    # ------------------------------------------------------------------
    # Branches & staff
    # ------------------------------------------------------------------
    @app.route("/api/branches", methods=["GET", "POST"])
    def branches() -> Any:
        if request.method == "POST":
            require_role("admin")
            data = _json_body()
            _require(data, "name")
            branch = system.create_branch(
                name=_text(data, "name"),
                address=data.get("address"),
                phone=data.get("phone"),
                opening_time=data.get("opening_time"),
                closing_time=data.get("closing_time"),
            )
            return jsonify({"data": branch}), 201
        return jsonify({"data": system.list_branches()})

    @app.route("/api/employees", methods=["GET", "POST"])
    def employees() -> Any:
        if request.method == "POST":
            require_role("admin")
            data = _json_body()
            _require(data, "full_name", "position")
            employee = system.create_employee(
                full_name=_text(data, "full_name"),
                position=data["position"],
                branch_id=data.get("branch_id"),
                user_id=data.get("user_id"),
                phone=data.get("phone"),
                base_salary=data.get("base_salary"),
                started_on=data.get("started_on"),
            )
            return jsonify({"data": employee}), 201
        return jsonify({"data": system.list_doctors(branch_id=request.args.get("branch_id", type=int))})

    # ------------------------------------------------------------------
    # Customers & pets
    # ------------------------------------------------------------------
    @app.route("/api/customers", methods=["GET", "POST"])
    def customers() -> Any:
        if request.method == "POST":
            data = _json_body()
            _require(data, "full_name")
            customer = system.register_customer(
                full_name=_text(data, "full_name"),
                phone=data.get("phone"),
                email=data.get("email"),
                national_id=data.get("national_id"),
                gender=data.get("gender"),
                birth_date=data.get("birth_date"),
            )
            return jsonify({"data": _present_customer(customer)}), 201
        require_role(*STAFF_ROLES)
        rows = system.list_customers(membership_level=request.args.get("membership_level"))
        return jsonify({"data": [_present_customer(row) for row in rows]})

    @app.get("/api/customers/<int:customer_id>")
    def customer_detail(customer_id: int) -> Any:
        require_role(*STAFF_ROLES)
        customer = _present_customer(system.get_customer(customer_id))
        customer["pets"] = system.list_pets(customer_id=customer_id)
        customer["appointments"] = [
            _present_appointment(row)
            for row in system.list_appointments(customer_id=customer_id)
        ]
        customer["invoices"] = system.list_invoices(customer_id=customer_id)
        return jsonify({"data": customer})

    @app.get("/api/customers/<int:customer_id>/membership")
    def customer_membership(customer_id: int) -> Any:
        customer = system.get_customer(customer_id)
        level = customer["membership_level"]
        spending = system.yearly_spending(
            customer_id=customer_id, year=request.args.get("year", type=int)
        )
        return jsonify(
            {
                "data": {
                    "membership_level": level,
                    "display": membership_display(level),
                    "yearly_spending": spending,
                    "loyalty_points": customer["loyalty_points"],
                    "next_tier": next_tier_info(level, spending),
                    "requirement": next_level_requirement(level, spending),
                }
            }
        )

    @app.route("/api/customers/<int:customer_id>/pets", methods=["GET", "POST"])
    def customer_pets(customer_id: int) -> Any:
        if request.method == "POST":
            data = _json_body()
            _require(data, "name")
            pet = system.add_pet(
                customer_id=customer_id,
                name=_text(data, "name"),
                species=data.get("species"),
                breed=data.get("breed"),
                birth_date=data.get("birth_date"),
                gender=data.get("gender"),
                health_status=data.get("health_status"),
            )
            return jsonify({"data": pet}), 201
        system.get_customer(customer_id)
        return jsonify({"data": system.list_pets(customer_id=customer_id)})

    # ------------------------------------------------------------------
    # Appointments
    # ------------------------------------------------------------------
    @app.route("/api/appointments", methods=["GET", "POST"])
    def appointments() -> Any:
        if request.method == "POST":
            appointment = system.book_appointment(_json_body())
            return jsonify({"data": _present_appointment(appointment)}), 201
        rows = system.list_appointments(
            doctor_id=request.args.get("doctor_id", type=int),
            customer_id=request.args.get("customer_id", type=int),
            branch_id=request.args.get("branch_id", type=int),
            date=request.args.get("date"),
        )
        return jsonify({"data": [_present_appointment(row) for row in rows]})

    @app.get("/api/appointments/<int:appointment_id>")
    def appointment_detail(appointment_id: int) -> Any:
        return jsonify({"data": _present_appointment(system.get_appointment(appointment_id))})

    @app.patch("/api/appointments/<int:appointment_id>/status")
    def appointment_status(appointment_id: int) -> Any:
        require_role(*STAFF_ROLES)
        data = _json_body()
        _require(data, "status")
        appointment = system.update_appointment_status(
            appointment_id=appointment_id, status=data["status"]
        )
        return jsonify({"data": _present_appointment(appointment)})

    @app.post("/api/appointments/<int:appointment_id>/cancel")
    def cancel_appointment(appointment_id: int) -> Any:
        require_role(*ROLES)
        system.cancel_appointment(appointment_id)
        return jsonify({"success": True, "message": "Appointment cancelled"})

    # ------------------------------------------------------------------
    # Medical records
    # ------------------------------------------------------------------
    @app.route("/api/pets/<int:pet_id>/medical-records", methods=["GET", "POST"])
    def medical_records(pet_id: int) -> Any:
        if request.method == "POST":
            require_role("veterinarian", "admin")
            data = _json_body()
            _require(data, "diagnosis")
            record = system.add_medical_record(
                pet_id=pet_id,
                diagnosis=data["diagnosis"],
                doctor_id=data.get("doctor_id"),
                appointment_id=data.get("appointment_id"),
                symptoms=data.get("symptoms"),
                prescription=data.get("prescription"),
                follow_up_date=data.get("follow_up_date"),
            )
            return jsonify({"data": record}), 201
        return jsonify({"data": system.list_medical_records(pet_id=pet_id)})

    # ------------------------------------------------------------------
    # Promotions
    # ------------------------------------------------------------------
    @app.route("/api/promotions", methods=["GET", "POST"])
    def promotions() -> Any:
        if request.method == "POST":
            require_role("admin")
            data = _json_body()
            promotion = system.create_promotion(
                description=data.get("description"),
                discount_rate=data.get("discount_rate"),
                target_audience=data.get("target_audience"),
                applicable_service_types=data.get("applicable_service_types") or [],
                start_date=data.get("start_date"),
                end_date=data.get("end_date"),
                branch_id=data.get("branch_id"),
                is_active=data.get("is_active", True),
            )
            return jsonify({"data": promotion}), 201
        return jsonify(
            {"data": system.list_promotions(branch_id=request.args.get("branch_id", type=int))}
        )

    # ------------------------------------------------------------------
    # Billing & membership
    # ------------------------------------------------------------------
    @app.route("/api/invoices", methods=["GET", "POST"])
    def invoices() -> Any:
        if request.method == "POST":
            staff = require_role("receptionist", "admin")
            data = _json_body()
            _require(data, "customer_id", "items")
            invoice = system.create_invoice(
                customer_id=data["customer_id"],
                items=data["items"],
                branch_id=data.get("branch_id"),
                appointment_id=data.get("appointment_id"),
                issue_date=data.get("issue_date"),
                created_by=staff["id"],
            )
            return jsonify({"data": invoice}), 201
        rows = system.list_invoices(
            customer_id=request.args.get("customer_id", type=int),
            branch_id=request.args.get("branch_id", type=int),
            status=request.args.getlist("status") or None,
        )
        return jsonify({"data": rows})

    @app.get("/api/invoices/<int:invoice_id>")
    def invoice_detail(invoice_id: int) -> Any:
        return jsonify({"data": system.get_invoice(invoice_id)})

    @app.post("/api/invoices/<int:invoice_id>/payments")
    def record_payment(invoice_id: int) -> Any:
        require_role("receptionist", "admin")
        data = _json_body()
        _require(data, "amount")
        invoice = system.record_payment(
            invoice_id=invoice_id,
            amount=data["amount"],
            method=data.get("method", "Tiền mặt"),
            payment_date=data.get("payment_date") or dt.date.today().isoformat(),
            reference=data.get("reference"),
        )
        return jsonify({"data": invoice})

    @app.post("/api/memberships/recalculate")
    def recalculate_memberships() -> Any:
        require_role("admin")
        summary = system.recalculate_all_memberships(year=request.args.get("year", type=int))
        return jsonify({"data": summary})

    @app.get("/api/memberships/stats")
    def membership_stats() -> Any:
        return jsonify({"data": system.membership_stats()})

    return app


__all__ = ["create_app"]
