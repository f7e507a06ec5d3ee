"""Core orchestration logic for the pet clinic platform."""

from __future__ import annotations

import datetime as dt
import functools
import hashlib
import json
import logging
import secrets
import threading
from typing import Any, Mapping, Sequence

from .appointments import INCOMPLETE, INVALID, evaluate_appointment_payload
from .database import get_connection, get_metadata, initialize_database, set_metadata
from .errors import AuthorizationError, NotFoundError, ValidationError
from .membership import (
    DEFAULT_MEMBERSHIP_LEVEL,
    LOYAL,
    VIP,
    determine_membership_level,
    membership_rank,
)
from .promotions import (
    SERVICE_TYPE_NAMES,
    calculate_invoice_totals,
    promotion_status,
    validate_promotion,
)
from .status import BACKEND_STATUSES, to_backend_status

logger = logging.getLogger(__name__)

ROLES = ("customer", "receptionist", "veterinarian", "admin")
STAFF_ROLES = ("receptionist", "veterinarian", "admin")
DOCTOR_POSITION = "Bác sĩ thú y"
CANCELLED_STATUS = to_backend_status("Cancelled")


def _is_amount(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 0


def _synchronized(method):
    """Serialise writers that share the facade's connection."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)

    return wrapper


class ClinicSystem:
    """High level façade that exposes application level behaviours."""

    def __init__(self, db_path: str = ":memory:") -> None:
        self.conn = get_connection(db_path)
        self._lock = threading.RLock()
        initialize_database(self.conn)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _hash_password(self, password: str) -> str:
        salt = secrets.token_hex(16)
        digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), 390000)
        return f"pbkdf2_sha256${salt}${digest.hex()}"

    def _verify_password(self, stored: str, provided: str) -> bool:
        algorithm, salt, hex_digest = stored.split("$")
        candidate = hashlib.pbkdf2_hmac("sha256", provided.encode(), salt.encode(), 390000)
        return secrets.compare_digest(candidate.hex(), hex_digest)

    def require_role(self, api_key: str | None, allowed: Sequence[str]) -> dict:
        user = None
        if api_key:
            user = self.conn.execute(
                "SELECT * FROM users WHERE api_key = ? AND is_active = 1", (api_key,)
            ).fetchone()
        if not user or user["role"] not in allowed:
            raise AuthorizationError("User does not have permission to perform this action")
        return user

    def _get_next_sequence(self, name: str) -> int:
        """Advance a counter inside the caller's transaction."""

        next_value = int(get_metadata(self.conn, f"seq_{name}", "0")) + 1
        set_metadata(self.conn, f"seq_{name}", next_value, commit=False)
        return next_value

    # ------------------------------------------------------------------
    # Authentication & users
    # ------------------------------------------------------------------
    @_synchronized
    def register_user(
        self,
        *,
        email: str,
        password: str,
        role: str,
        name: str | None = None,
        phone: str | None = None,
        branch_id: int | None = None,
    ) -> dict:
        if role not in ROLES:
            raise ValidationError(f"Unknown role: {role}")
        if not isinstance(email, str) or not isinstance(password, str):
            raise ValidationError("Email and password are required")
        if not email or not password:
            raise ValidationError("Email and password are required")
        exists = self.conn.execute(
            "SELECT id FROM users WHERE email = ?", (email.lower(),)
        ).fetchone()
        if exists:
            raise ValidationError("Email is already registered")
        password_hash = self._hash_password(password)
        api_key = secrets.token_hex(16)
        cur = self.conn.execute(
            """
            INSERT INTO users(email, password_hash, role, api_key, name, phone, branch_id)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (email.lower(), password_hash, role, api_key, name, phone, branch_id),
        )
        self.conn.commit()
        return self.get_user(cur.lastrowid)

    def get_user(self, user_id: int) -> dict:
        row = self.conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if not row:
            raise NotFoundError("User not found")
        return row

    def login(self, *, email: str, password: str) -> dict:
        if not isinstance(email, str) or not isinstance(password, str):
            raise AuthorizationError("Invalid credentials")
        row = self.conn.execute(
            "SELECT * FROM users WHERE email = ? AND is_active = 1", (email.lower(),)
        ).fetchone()
        if not row or not self._verify_password(row["password_hash"], password):
            raise AuthorizationError("Invalid credentials")
        return {"user_id": row["id"], "api_key": row["api_key"], "role": row["role"]}

    def list_users(self, *, branch_id: int | None = None, role: str | None = None) -> list[dict]:
        """Return active users, optionally filtered by branch or role."""

        params: list[Any] = []
        where = " WHERE is_active = 1"
        if branch_id is not None:
            where += " AND (branch_id = ? OR branch_id IS NULL)"
            params.append(branch_id)
        if role is not None:
            where += " AND role = ?"
            params.append(role)
        return self.conn.execute(
            "SELECT * FROM users" + where + " ORDER BY role, name",
            params,
        ).fetchall()

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------
    @_synchronized
    def create_branch(
        self,
        *,
        name: str,
        address: str | None = None,
        phone: str | None = None,
        opening_time: str | None = None,
        closing_time: str | None = None,
    ) -> dict:
        if not name:
            raise ValidationError("Branch name is required")
        cur = self.conn.execute(
            """
            INSERT INTO branches(name, address, phone, opening_time, closing_time)
            VALUES (?, ?, ?, ?, ?)
            """,
            (name, address, phone, opening_time, closing_time),
        )
        self.conn.commit()
        return self.get_branch(cur.lastrowid)

    def get_branch(self, branch_id: int) -> dict:
        row = self.conn.execute("SELECT * FROM branches WHERE id = ?", (branch_id,)).fetchone()
        if not row:
            raise NotFoundError("Branch not found")
        return row

    def list_branches(self) -> list[dict]:
        return self.conn.execute("SELECT * FROM branches ORDER BY name").fetchall()

    # ------------------------------------------------------------------
    # Customers & pets
    # ------------------------------------------------------------------
    @_synchronized
    def register_customer(
        self,
        *,
        full_name: str,
        phone: str | None = None,
        email: str | None = None,
        national_id: str | None = None,
        gender: str | None = None,
        birth_date: str | None = None,
        user_id: int | None = None,
    ) -> dict:
        if not full_name:
            raise ValidationError("Customer name is required")
        cur = self.conn.execute(
            """
            INSERT INTO customers(
                user_id, full_name, phone, email, national_id, gender, birth_date,
                membership_level
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                full_name,
                phone,
                email.lower() if email else None,
                national_id,
                gender,
                birth_date,
                DEFAULT_MEMBERSHIP_LEVEL,
            ),
        )
        self.conn.commit()
        return self.get_customer(cur.lastrowid)

    def get_customer(self, customer_id: int) -> dict:
        row = self.conn.execute(
            "SELECT * FROM customers WHERE id = ?", (customer_id,)
        ).fetchone()
        if not row:
            raise NotFoundError("Customer not found")
        return row

    def list_customers(self, *, membership_level: str | None = None) -> list[dict]:
        """Return customers ordered by name, optionally for one membership tier."""

        if membership_level is None:
            return self.conn.execute("SELECT * FROM customers ORDER BY full_name").fetchall()
        return self.conn.execute(
            "SELECT * FROM customers WHERE membership_level = ? ORDER BY full_name",
            (membership_level,),
        ).fetchall()

    @_synchronized
    def add_pet(
        self,
        *,
        customer_id: int,
        name: str,
        species: str | None = None,
        breed: str | None = None,
        birth_date: str | None = None,
        gender: str | None = None,
        health_status: str | None = None,
    ) -> dict:
        self.get_customer(customer_id)
        if not name:
            raise ValidationError("Pet name is required")
        cur = self.conn.execute(
            """
            INSERT INTO pets(customer_id, name, species, breed, birth_date, gender, health_status)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (customer_id, name, species, breed, birth_date, gender, health_status),
        )
        self.conn.commit()
        return self.get_pet(cur.lastrowid)

    def get_pet(self, pet_id: int) -> dict:
        row = self.conn.execute("SELECT * FROM pets WHERE id = ?", (pet_id,)).fetchone()
        if not row:
            raise NotFoundError("Pet not found")
        return row

    def list_pets(self, *, customer_id: int | None = None) -> list[dict]:
        """Return pets with their owner's name, optionally for one customer."""

        where = ""
        params: list[Any] = []
        if customer_id is not None:
            where = " WHERE pets.customer_id = ?"
            params.append(customer_id)
        return self.conn.execute(
            """
            SELECT pets.*, customers.full_name AS owner_name
            FROM pets
            JOIN customers ON customers.id = pets.customer_id
            {where}
            ORDER BY pets.name
            """.format(where=where),
            params,
        ).fetchall()

    # ------------------------------------------------------------------
    # Staff
    # ------------------------------------------------------------------
    @_synchronized
    def create_employee(
        self,
        *,
        full_name: str,
        position: str,
        branch_id: int | None = None,
        user_id: int | None = None,
        phone: str | None = None,
        base_salary: float | None = None,
        started_on: str | None = None,
    ) -> dict:
        if branch_id is not None:
            self.get_branch(branch_id)
        if user_id is not None:
            self.get_user(user_id)
        cur = self.conn.execute(
            """
            INSERT INTO employees(user_id, branch_id, full_name, position, phone, base_salary, started_on)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (user_id, branch_id, full_name, position, phone, base_salary, started_on),
        )
        self.conn.commit()
        return self.get_employee(cur.lastrowid)

    def get_employee(self, employee_id: int) -> dict:
        row = self.conn.execute(
            "SELECT * FROM employees WHERE id = ?", (employee_id,)
        ).fetchone()
        if not row:
            raise NotFoundError("Employee not found")
        return row

    def list_doctors(self, *, branch_id: int | None = None) -> list[dict]:
        params: list[Any] = [DOCTOR_POSITION]
        where = " WHERE position = ?"
        if branch_id is not None:
            where += " AND branch_id = ?"
            params.append(branch_id)
        return self.conn.execute(
            "SELECT * FROM employees" + where + " ORDER BY full_name",
            params,
        ).fetchall()

    # ------------------------------------------------------------------
    # Appointments
    # ------------------------------------------------------------------
    @_synchronized
    def book_appointment(self, data: Mapping[str, Any]) -> dict:
        """Create an appointment from a raw booking request.

        ``data`` may use any of the field spellings accepted by
        :func:`~petclinic.clinic.appointments.normalize_appointment_payload`.
        ``service_type`` and ``notes`` are optional extras.
        """

        result = evaluate_appointment_payload(data)
        if result.status == INCOMPLETE:
            raise ValidationError("Missing required appointment fields")
        if result.status == INVALID:
            raise ValidationError(result.reason)
        payload = result.payload

        self.get_customer(payload.customer_id)
        pet = self.get_pet(payload.pet_id)
        if pet["customer_id"] != payload.customer_id:
            raise ValidationError("Pet does not belong to this customer")
        self.get_branch(payload.branch_id)
        doctor = self.get_employee(payload.doctor_id)
        if doctor["position"] != DOCTOR_POSITION:
            raise ValidationError("Selected employee is not a veterinarian")

        service_type = data.get("service_type") or data.get("serviceType") or "medical-exam"
        if service_type not in SERVICE_TYPE_NAMES:
            raise ValidationError(f"Unknown service type: {service_type}")

        cur = self.conn.execute(
            """
            INSERT INTO appointments(
                customer_id, pet_id, branch_id, doctor_id, appointment_time, service_type, notes
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                payload.customer_id,
                payload.pet_id,
                payload.branch_id,
                payload.doctor_id,
                payload.appointment_time,
                service_type,
                data.get("notes"),
            ),
        )
        self.conn.commit()
        logger.info(
            "Booked appointment %s for pet %s at %s",
            cur.lastrowid,
            payload.pet_id,
            payload.appointment_time,
        )
        return self.get_appointment(cur.lastrowid)

    def get_appointment(self, appointment_id: int) -> dict:
        row = self.conn.execute(
            """
            SELECT appointments.*,
                   pets.name AS pet_name, pets.species,
                   customers.full_name AS owner_name,
                   employees.full_name AS doctor_name,
                   branches.name AS branch_name
            FROM appointments
            LEFT JOIN pets ON pets.id = appointments.pet_id
            LEFT JOIN customers ON customers.id = appointments.customer_id
            LEFT JOIN employees ON employees.id = appointments.doctor_id
            LEFT JOIN branches ON branches.id = appointments.branch_id
            WHERE appointments.id = ?
            """,
            (appointment_id,),
        ).fetchone()
        if not row:
            raise NotFoundError("Appointment not found")
        return row

    def list_appointments(
        self,
        *,
        doctor_id: int | None = None,
        customer_id: int | None = None,
        branch_id: int | None = None,
        date: str | None = None,
    ) -> list[dict]:
        """Return appointments ordered by time; ``date`` matches the UTC day."""

        conditions: list[str] = []
        params: list[Any] = []
        if doctor_id is not None:
            conditions.append("appointments.doctor_id = ?")
            params.append(doctor_id)
        if customer_id is not None:
            conditions.append("appointments.customer_id = ?")
            params.append(customer_id)
        if branch_id is not None:
            conditions.append("appointments.branch_id = ?")
            params.append(branch_id)
        if date:
            conditions.append("substr(appointments.appointment_time, 1, 10) = ?")
            params.append(date)
        where = ""
        if conditions:
            where = " WHERE " + " AND ".join(conditions)
        return self.conn.execute(
            """
            SELECT appointments.*,
                   pets.name AS pet_name,
                   customers.full_name AS owner_name,
                   employees.full_name AS doctor_name,
                   branches.name AS branch_name
            FROM appointments
            LEFT JOIN pets ON pets.id = appointments.pet_id
            LEFT JOIN customers ON customers.id = appointments.customer_id
            LEFT JOIN employees ON employees.id = appointments.doctor_id
            LEFT JOIN branches ON branches.id = appointments.branch_id
            {where}
            ORDER BY appointments.appointment_time, appointments.id
            """.format(where=where),
            params,
        ).fetchall()

    @_synchronized
    def update_appointment_status(self, *, appointment_id: int, status: str) -> dict:
        """Persist a new status given in either the display or the stored vocabulary."""

        appointment = self.get_appointment(appointment_id)
        if not isinstance(status, str):
            raise ValidationError("Appointment status must be a string")
        backend_status = to_backend_status(status)
        if backend_status not in BACKEND_STATUSES:
            raise ValidationError(f"Unknown appointment status: {status}")
        self.conn.execute(
            "UPDATE appointments SET status = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (backend_status, appointment_id),
        )
        self.conn.commit()
        logger.info(
            "Appointment %s status %s -> %s",
            appointment_id,
            appointment["status"],
            backend_status,
        )
        return self.get_appointment(appointment_id)

    def cancel_appointment(self, appointment_id: int) -> dict:
        return self.update_appointment_status(
            appointment_id=appointment_id, status=CANCELLED_STATUS
        )

    # ------------------------------------------------------------------
    # Medical records
    # ------------------------------------------------------------------
    @_synchronized
    def add_medical_record(
        self,
        *,
        pet_id: int,
        diagnosis: str,
        doctor_id: int | None = None,
        appointment_id: int | None = None,
        symptoms: str | None = None,
        prescription: str | None = None,
        follow_up_date: str | None = None,
    ) -> dict:
        self.get_pet(pet_id)
        if not diagnosis:
            raise ValidationError("Diagnosis is required")
        if doctor_id is not None:
            self.get_employee(doctor_id)
        if appointment_id is not None:
            appointment = self.get_appointment(appointment_id)
            if appointment["pet_id"] != pet_id:
                raise ValidationError("Appointment is for a different pet")
        cur = self.conn.execute(
            """
            INSERT INTO medical_records(
                pet_id, doctor_id, appointment_id, symptoms, diagnosis, prescription, follow_up_date
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (pet_id, doctor_id, appointment_id, symptoms, diagnosis, prescription, follow_up_date),
        )
        self.conn.commit()
        return self.conn.execute(
            "SELECT * FROM medical_records WHERE id = ?", (cur.lastrowid,)
        ).fetchone()

    def list_medical_records(self, *, pet_id: int) -> list[dict]:
        self.get_pet(pet_id)
        return self.conn.execute(
            """
            SELECT medical_records.*, employees.full_name AS doctor_name
            FROM medical_records
            LEFT JOIN employees ON employees.id = medical_records.doctor_id
            WHERE medical_records.pet_id = ?
            ORDER BY medical_records.created_at DESC, medical_records.id DESC
            """,
            (pet_id,),
        ).fetchall()

    # ------------------------------------------------------------------
    # Promotions
    # ------------------------------------------------------------------
    def _decode_promotion(self, row: dict) -> dict:
        row["applicable_service_types"] = json.loads(row["applicable_service_types"])
        row["is_active"] = bool(row["is_active"])
        return row

    @_synchronized
    def create_promotion(
        self,
        *,
        description: str,
        discount_rate: float,
        target_audience: str,
        applicable_service_types: Sequence[str],
        start_date: str,
        end_date: str,
        branch_id: int | None = None,
        is_active: bool = True,
    ) -> dict:
        """Create a global promotion, or a branch promotion when ``branch_id`` is set."""

        errors = validate_promotion(
            {
                "description": description,
                "discount_rate": discount_rate,
                "target_audience": target_audience,
                "applicable_service_types": applicable_service_types,
                "start_date": start_date,
                "end_date": end_date,
            }
        )
        unknown = [code for code in applicable_service_types or () if code not in SERVICE_TYPE_NAMES]
        if unknown:
            errors.append("Unknown service types: " + ", ".join(unknown))
        if errors:
            raise ValidationError("; ".join(errors))
        if branch_id is not None:
            self.get_branch(branch_id)
        cur = self.conn.execute(
            """
            INSERT INTO promotions(
                scope, branch_id, description, discount_rate, target_audience,
                applicable_service_types, start_date, end_date, is_active
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                "global" if branch_id is None else "branch",
                branch_id,
                description.strip(),
                discount_rate,
                target_audience,
                json.dumps(list(applicable_service_types)),
                start_date,
                end_date,
                int(is_active),
            ),
        )
        self.conn.commit()
        return self.get_promotion(cur.lastrowid)

    def get_promotion(self, promotion_id: int) -> dict:
        row = self.conn.execute(
            "SELECT * FROM promotions WHERE id = ?", (promotion_id,)
        ).fetchone()
        if not row:
            raise NotFoundError("Promotion not found")
        return self._decode_promotion(row)

    def list_promotions(
        self, *, branch_id: int | None = None, now: dt.datetime | None = None
    ) -> list[dict]:
        """Return promotions with their status; ``branch_id`` adds that branch's own."""

        if branch_id is None:
            rows = self.conn.execute(
                "SELECT * FROM promotions ORDER BY start_date, id"
            ).fetchall()
        else:
            rows = self.conn.execute(
                """
                SELECT * FROM promotions
                WHERE scope = 'global' OR branch_id = ?
                ORDER BY start_date, id
                """,
                (branch_id,),
            ).fetchall()
        promotions = [self._decode_promotion(row) for row in rows]
        for promotion in promotions:
            promotion["status"] = promotion_status(promotion, now)
        return promotions

    # ------------------------------------------------------------------
    # Billing
    # ------------------------------------------------------------------
    def _generate_invoice_number(self, issue_date: dt.date) -> str:
        sequence = self._get_next_sequence(f"invoice_{issue_date.year}")
        return f"INV-{issue_date.year}-{sequence:05d}"

    @_synchronized
    def create_invoice(
        self,
        *,
        customer_id: int,
        items: Sequence[dict],
        branch_id: int | None = None,
        appointment_id: int | None = None,
        issue_date: str | None = None,
        created_by: int | None = None,
    ) -> dict:
        """Price ``items`` with the promotions in force and issue an invoice.

        Each item carries ``service_type`` and ``base_price`` and may add
        ``vaccine_cost``, ``package_cost`` and ``description``. The customer's
        membership is reviewed once the invoice is stored.
        """

        customer = self.get_customer(customer_id)
        if not items or not isinstance(items, (list, tuple)):
            raise ValidationError("Invoice requires at least one item")
        for item in items:
            if not isinstance(item, dict):
                raise ValidationError("Invoice items must be objects")
            service_type = item.get("service_type")
            if not isinstance(service_type, str) or service_type not in SERVICE_TYPE_NAMES:
                raise ValidationError(f"Unknown service type: {service_type}")
            if not _is_amount(item.get("base_price")):
                raise ValidationError("Item base_price must be a non-negative number")
            for extra in ("vaccine_cost", "package_cost"):
                if item.get(extra) is not None and not _is_amount(item[extra]):
                    raise ValidationError(f"Item {extra} must be a non-negative number")
        if appointment_id is not None:
            appointment = self.get_appointment(appointment_id)
            if appointment["customer_id"] != customer_id:
                raise ValidationError("Appointment belongs to a different customer")
            if branch_id is None:
                branch_id = appointment["branch_id"]
        if branch_id is not None:
            self.get_branch(branch_id)

        try:
            issued = dt.date.fromisoformat(issue_date) if issue_date else dt.date.today()
        except (TypeError, ValueError) as exc:
            raise ValidationError("issue_date must be an ISO date") from exc
        totals = calculate_invoice_totals(
            items,
            self.list_promotions(branch_id=branch_id),
            membership_level=customer["membership_level"],
            branch_id=branch_id,
            moment=dt.datetime.combine(issued, dt.time.min),
        )
        with self.conn:
            cur = self.conn.execute(
                """
                INSERT INTO invoices(
                    customer_id, branch_id, appointment_id, invoice_number, issue_date,
                    subtotal, discount, discount_rate, total, balance_due,
                    loyalty_points_earned, applied_promotions, created_by
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    customer_id,
                    branch_id,
                    appointment_id,
                    self._generate_invoice_number(issued),
                    issued.isoformat(),
                    totals["subtotal"],
                    totals["total_discount"],
                    round(totals["total_discount_rate"], 2),
                    totals["final_amount"],
                    totals["final_amount"],
                    totals["loyalty_points"],
                    json.dumps(totals["applied_promotion_ids"]),
                    created_by,
                ),
            )
            invoice_id = cur.lastrowid
            for line in totals["breakdown"]:
                line_promotions = [promo["promotion_id"] for promo in line["applied_promotions"]]
                self.conn.execute(
                    """
                    INSERT INTO invoice_line_items(
                        invoice_id, service_type, description, base_price, discount_amount,
                        final_price, applied_promotions
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        invoice_id,
                        line["service_type"],
                        line["service_name"],
                        line["base_price"],
                        line["discount_amount"],
                        line["final_price"],
                        json.dumps(line_promotions),
                    ),
                )
            self.conn.execute(
                "UPDATE customers SET loyalty_points = loyalty_points + ? WHERE id = ?",
                (totals["loyalty_points"], customer_id),
            )
            membership = self._review_membership(customer_id=customer_id, year=issued.year)
        logger.info(
            "Issued invoice %s for customer %s: total %s",
            invoice_id,
            customer_id,
            totals["final_amount"],
        )

        invoice = self.get_invoice(invoice_id)
        invoice["membership"] = membership
        return invoice

    def get_invoice(self, invoice_id: int) -> dict:
        row = self.conn.execute("SELECT * FROM invoices WHERE id = ?", (invoice_id,)).fetchone()
        if not row:
            raise NotFoundError("Invoice not found")
        row["applied_promotions"] = json.loads(row["applied_promotions"] or "[]")
        lines = self.conn.execute(
            "SELECT * FROM invoice_line_items WHERE invoice_id = ? ORDER BY id",
            (invoice_id,),
        ).fetchall()
        for line in lines:
            line["applied_promotions"] = json.loads(line["applied_promotions"] or "[]")
        payments = self.conn.execute(
            "SELECT * FROM payments WHERE invoice_id = ? ORDER BY id",
            (invoice_id,),
        ).fetchall()
        row["line_items"] = lines
        row["payments"] = payments
        return row

    def list_invoices(
        self,
        *,
        customer_id: int | None = None,
        branch_id: int | None = None,
        status: Sequence[str] | None = None,
    ) -> list[dict]:
        """Return invoices optionally filtered by customer, branch or status."""

        params: list[Any] = []
        conditions: list[str] = []
        if customer_id is not None:
            conditions.append("customer_id = ?")
            params.append(customer_id)
        if branch_id is not None:
            conditions.append("branch_id = ?")
            params.append(branch_id)
        if status:
            placeholders = ",".join("?" for _ in status)
            conditions.append(f"status IN ({placeholders})")
            params.extend(status)
        where = ""
        if conditions:
            where = " WHERE " + " AND ".join(conditions)
        rows = self.conn.execute(
            "SELECT * FROM invoices" + where + " ORDER BY issue_date DESC, id DESC",
            params,
        ).fetchall()
        for row in rows:
            row["applied_promotions"] = json.loads(row["applied_promotions"] or "[]")
        return rows

    @_synchronized
    def record_payment(
        self,
        *,
        invoice_id: int,
        amount: float,
        method: str,
        payment_date: str,
        reference: str | None = None,
    ) -> dict:
        invoice = self.conn.execute(
            "SELECT * FROM invoices WHERE id = ?", (invoice_id,)
        ).fetchone()
        if not invoice:
            raise NotFoundError("Invoice not found")
        if not isinstance(amount, (int, float)) or isinstance(amount, bool) or amount <= 0:
            raise ValidationError("Payment amount must be positive")
        self.conn.execute(
            """
            INSERT INTO payments(invoice_id, amount, method, payment_date, reference)
            VALUES (?, ?, ?, ?, ?)
            """,
            (invoice_id, amount, method, payment_date, reference),
        )
        new_balance = round(invoice["balance_due"] - amount, 2)
        status = "paid" if new_balance <= 0 else "partial"
        self.conn.execute(
            "UPDATE invoices SET balance_due = ?, status = ? WHERE id = ?",
            (new_balance, status, invoice_id),
        )
        self.conn.commit()
        return self.get_invoice(invoice_id)

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------
    def yearly_spending(self, *, customer_id: int, year: int | None = None) -> float:
        year = year or dt.date.today().year
        row = self.conn.execute(
            """
            SELECT SUM(total) AS spent FROM invoices
            WHERE customer_id = ? AND substr(issue_date, 1, 4) = ?
            """,
            (customer_id, f"{year:04d}"),
        ).fetchone()
        return row["spent"] or 0

    def _review_membership(self, *, customer_id: int, year: int | None) -> dict:
        customer = self.get_customer(customer_id)
        old_level = customer["membership_level"] or DEFAULT_MEMBERSHIP_LEVEL
        spending = self.yearly_spending(customer_id=customer_id, year=year)
        new_level = determine_membership_level(old_level, spending)
        self.conn.execute(
            "UPDATE customers SET membership_level = ?, yearly_spending = ? WHERE id = ?",
            (new_level, spending, customer_id),
        )
        if new_level != old_level:
            logger.info("Customer %s membership %s -> %s", customer_id, old_level, new_level)
        return {
            "customer_id": customer_id,
            "old_level": old_level,
            "new_level": new_level,
            "yearly_spending": spending,
            "upgraded": membership_rank(new_level) > membership_rank(old_level),
            "downgraded": membership_rank(new_level) < membership_rank(old_level),
        }

    @_synchronized
    def update_customer_membership(self, *, customer_id: int, year: int | None = None) -> dict:
        """Recompute a customer's yearly spending and review their tier."""

        with self.conn:
            return self._review_membership(customer_id=customer_id, year=year)

    @_synchronized
    def recalculate_all_memberships(self, *, year: int | None = None) -> dict:
        summary = {"updated": 0, "upgraded": 0, "downgraded": 0}
        for customer in self.list_customers():
            result = self.update_customer_membership(customer_id=customer["id"], year=year)
            summary["updated"] += 1
            summary["upgraded"] += int(result["upgraded"])
            summary["downgraded"] += int(result["downgraded"])
        return summary

    def membership_stats(self) -> dict:
        rows = self.conn.execute(
            "SELECT membership_level, COUNT(*) AS total FROM customers GROUP BY membership_level"
        ).fetchall()
        counts = {row["membership_level"]: row["total"] for row in rows}
        vip = counts.pop(VIP, 0)
        loyal = counts.pop(LOYAL, 0)
        basic = sum(counts.values())
        return {"basic": basic, "loyal": loyal, "vip": vip, "total": basic + loyal + vip}

    def close(self) -> None:
        self.conn.close()


__all__ = [
    "AuthorizationError",
    "ClinicSystem",
    "NotFoundError",
    "ValidationError",
]
