import datetime as dt
import unittest
from concurrent.futures import ThreadPoolExecutor

from petclinic.clinic.errors import NotFoundError
from petclinic.clinic.system import (
    DOCTOR_POSITION,
    AuthorizationError,
    ClinicSystem,
    ValidationError,
)


class ClinicSystemTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.system = ClinicSystem()
        self.today = dt.date.today()
        self.branch = self.system.create_branch(
            name="Quận 1",
            address="12 Lê Lợi",
            phone="02838000000",
            opening_time="08:00",
            closing_time="20:00",
        )
        self.other_branch = self.system.create_branch(name="Thủ Đức")
        self.admin = self.system.register_user(
            email="Admin@Example.com",
            password="Password!23",
            role="admin",
            name="Casey Admin",
        )
        self.doctor = self.system.create_employee(
            full_name="Trần Văn Bác",
            position=DOCTOR_POSITION,
            branch_id=self.branch["id"],
        )
        self.receptionist = self.system.create_employee(
            full_name="Lê Thị Tiếp",
            position="Tiếp tân",
            branch_id=self.branch["id"],
        )
        self.customer = self.system.register_customer(
            full_name="Nguyễn Văn An",
            phone="0900000000",
            email="AN@example.com",
        )
        self.pet = self.system.add_pet(
            customer_id=self.customer["id"], name="Milo", species="Dog", breed="Corgi"
        )

    def tearDown(self) -> None:
        self.system.close()

    def _booking(self, **overrides) -> dict:
        data = {
            "customerId": str(self.customer["id"]),
            "petId": self.pet["id"],
            "branch_id": self.branch["id"],
            "veterinarianId": self.doctor["id"],
            "appointmentDate": self.today.isoformat(),
            "appointmentTime": "09:30",
        }
        data.update(overrides)
        return data

    def test_users_and_login(self) -> None:
        self.assertEqual(self.admin["email"], "admin@example.com")
        session = self.system.login(email="ADMIN@example.com", password="Password!23")
        self.assertEqual(session["role"], "admin")
        self.assertEqual(
            self.system.require_role(session["api_key"], ["admin"])["id"], self.admin["id"]
        )
        with self.assertRaises(AuthorizationError):
            self.system.login(email="admin@example.com", password="wrong")
        with self.assertRaises(AuthorizationError):
            self.system.require_role(session["api_key"], ["veterinarian"])
        with self.assertRaises(AuthorizationError):
            self.system.require_role(None, ["admin"])
        with self.assertRaises(ValidationError):
            self.system.register_user(email="admin@example.com", password="x", role="admin")
        with self.assertRaises(ValidationError):
            self.system.register_user(email="x@example.com", password="x", role="owner")
        self.assertEqual(len(self.system.list_users(role="admin")), 1)

    def test_directory_helpers(self) -> None:
        self.assertEqual(self.customer["membership_level"], "Cơ bản")
        self.assertEqual(self.customer["email"], "an@example.com")
        self.assertEqual(len(self.system.list_branches()), 2)
        doctors = self.system.list_doctors(branch_id=self.branch["id"])
        self.assertEqual([row["id"] for row in doctors], [self.doctor["id"]])
        pets = self.system.list_pets(customer_id=self.customer["id"])
        self.assertEqual(pets[0]["owner_name"], "Nguyễn Văn An")
        with self.assertRaises(NotFoundError):
            self.system.get_pet(999)
        with self.assertRaises(ValidationError):
            self.system.add_pet(customer_id=999, name="Ghost")

    def test_appointment_lifecycle(self) -> None:
        appointment = self.system.book_appointment(self._booking(notes="Annual check"))
        self.assertEqual(appointment["status"], "Đang chờ xác nhận")
        self.assertEqual(appointment["customer_id"], self.customer["id"])
        self.assertEqual(appointment["doctor_id"], self.doctor["id"])
        self.assertTrue(appointment["appointment_time"].endswith("Z"))
        self.assertEqual(appointment["pet_name"], "Milo")
        self.assertEqual(appointment["service_type"], "medical-exam")

        confirmed = self.system.update_appointment_status(
            appointment_id=appointment["id"], status="Checked-in"
        )
        self.assertEqual(confirmed["status"], "Đã xác nhận")
        in_progress = self.system.update_appointment_status(
            appointment_id=appointment["id"], status="Đang xử lý"
        )
        self.assertEqual(in_progress["status"], "Đang xử lý")
        with self.assertRaises(ValidationError):
            self.system.update_appointment_status(
                appointment_id=appointment["id"], status="Rescheduled"
            )
        with self.assertRaises(ValidationError):
            self.system.update_appointment_status(
                appointment_id=appointment["id"], status=["Confirmed"]
            )
        cancelled = self.system.cancel_appointment(appointment["id"])
        self.assertEqual(cancelled["status"], "Hủy bỏ")

        listed = self.system.list_appointments(doctor_id=self.doctor["id"])
        self.assertEqual([row["id"] for row in listed], [appointment["id"]])
        self.assertEqual(self.system.list_appointments(branch_id=self.other_branch["id"]), [])

    def test_booking_rejections(self) -> None:
        with self.assertRaisesRegex(ValidationError, "Missing required"):
            self.system.book_appointment(self._booking(branch_id=None))
        with self.assertRaisesRegex(ValidationError, "Missing required"):
            self.system.book_appointment(self._booking(customerId=0))
        with self.assertRaises(ValidationError):
            self.system.book_appointment(self._booking(appointmentTime="9h30"))
        with self.assertRaises(NotFoundError):
            self.system.book_appointment(self._booking(branch_id=999))
        with self.assertRaisesRegex(ValidationError, "not a veterinarian"):
            self.system.book_appointment(self._booking(veterinarianId=self.receptionist["id"]))
        stranger = self.system.register_customer(full_name="Phạm Khách")
        with self.assertRaisesRegex(ValidationError, "does not belong"):
            self.system.book_appointment(self._booking(customerId=stranger["id"]))
        with self.assertRaises(ValidationError):
            self.system.book_appointment(self._booking(service_type="grooming"))

    def test_medical_records(self) -> None:
        appointment = self.system.book_appointment(self._booking())
        record = self.system.add_medical_record(
            pet_id=self.pet["id"],
            diagnosis="Viêm da",
            doctor_id=self.doctor["id"],
            appointment_id=appointment["id"],
            prescription="Thuốc bôi",
            follow_up_date=(self.today + dt.timedelta(days=14)).isoformat(),
        )
        self.assertEqual(record["diagnosis"], "Viêm da")
        records = self.system.list_medical_records(pet_id=self.pet["id"])
        self.assertEqual(records[0]["doctor_name"], "Trần Văn Bác")
        other_pet = self.system.add_pet(customer_id=self.customer["id"], name="Luna")
        with self.assertRaises(ValidationError):
            self.system.add_medical_record(
                pet_id=other_pet["id"], diagnosis="Khỏe", appointment_id=appointment["id"]
            )

    def test_invoice_applies_promotions_and_upgrades_membership(self) -> None:
        start = (self.today - dt.timedelta(days=1)).isoformat()
        end = (self.today + dt.timedelta(days=30)).isoformat()
        global_promo = self.system.create_promotion(
            description="Khám sức khỏe giảm giá",
            discount_rate=10,
            target_audience="All",
            applicable_service_types=["medical-exam"],
            start_date=start,
            end_date=end,
        )
        branch_promo = self.system.create_promotion(
            description="Ưu đãi chi nhánh",
            discount_rate=5,
            target_audience="All",
            applicable_service_types=["medical-exam"],
            start_date=start,
            end_date=end,
            branch_id=self.branch["id"],
        )
        self.system.create_promotion(
            description="Chỉ cho VIP",
            discount_rate=15,
            target_audience="VIP+",
            applicable_service_types=["medical-exam"],
            start_date=start,
            end_date=end,
        )
        appointment = self.system.book_appointment(self._booking())

        invoice = self.system.create_invoice(
            customer_id=self.customer["id"],
            appointment_id=appointment["id"],
            items=[
                {"service_type": "medical-exam", "base_price": 6_000_000},
                {"service_type": "purchase", "base_price": 500_000, "description": "Thức ăn"},
            ],
            created_by=self.admin["id"],
        )
        self.assertEqual(invoice["branch_id"], self.branch["id"])
        self.assertEqual(invoice["subtotal"], 6_500_000)
        self.assertEqual(invoice["discount"], 900_000)
        self.assertEqual(invoice["total"], 5_600_000)
        self.assertEqual(invoice["balance_due"], 5_600_000)
        self.assertEqual(invoice["loyalty_points_earned"], 112)
        self.assertEqual(invoice["applied_promotions"], [global_promo["id"], branch_promo["id"]])
        self.assertEqual(len(invoice["line_items"]), 2)
        self.assertEqual(invoice["line_items"][1]["description"], "Thức ăn")
        self.assertTrue(invoice["invoice_number"].startswith(f"INV-{self.today.year}-"))

        self.assertTrue(invoice["membership"]["upgraded"])
        self.assertEqual(invoice["membership"]["new_level"], "Thân thiết")
        customer = self.system.get_customer(self.customer["id"])
        self.assertEqual(customer["membership_level"], "Thân thiết")
        self.assertEqual(customer["yearly_spending"], 5_600_000)
        self.assertEqual(customer["loyalty_points"], 112)

        paid = self.system.record_payment(
            invoice_id=invoice["id"],
            amount=5_600_000,
            method="Tiền mặt",
            payment_date=self.today.isoformat(),
        )
        self.assertEqual(paid["status"], "paid")
        self.assertEqual(paid["balance_due"], 0)
        self.assertEqual(len(self.system.list_invoices(status=["paid"])), 1)

        stats = self.system.membership_stats()
        self.assertEqual(stats, {"basic": 0, "loyal": 1, "vip": 0, "total": 1})

    def test_invoice_rejections(self) -> None:
        with self.assertRaises(ValidationError):
            self.system.create_invoice(customer_id=self.customer["id"], items=[])
        with self.assertRaises(ValidationError):
            self.system.create_invoice(
                customer_id=self.customer["id"],
                items=[{"service_type": "grooming", "base_price": 100}],
            )
        with self.assertRaises(ValidationError):
            self.system.create_invoice(
                customer_id=self.customer["id"],
                items=[{"service_type": "purchase", "base_price": -1}],
            )
        with self.assertRaises(ValidationError):
            self.system.create_invoice(customer_id=self.customer["id"], items=["x"])
        with self.assertRaises(ValidationError):
            self.system.create_invoice(
                customer_id=self.customer["id"],
                items=[{"service_type": ["purchase"], "base_price": 100}],
            )
        with self.assertRaises(ValidationError):
            self.system.create_invoice(
                customer_id=self.customer["id"],
                items=[
                    {"service_type": "single-vaccine", "base_price": 100, "vaccine_cost": "50"}
                ],
            )
        with self.assertRaisesRegex(ValidationError, "ISO date"):
            self.system.create_invoice(
                customer_id=self.customer["id"],
                items=[{"service_type": "purchase", "base_price": 100}],
                issue_date="not-a-date",
            )
        self.assertEqual(self.system.list_invoices(customer_id=self.customer["id"]), [])

    def test_concurrent_invoices_get_distinct_numbers(self) -> None:
        def issue(_: int) -> str:
            invoice = self.system.create_invoice(
                customer_id=self.customer["id"],
                items=[{"service_type": "purchase", "base_price": 100_000}],
            )
            return invoice["invoice_number"]

        with ThreadPoolExecutor(max_workers=8) as pool:
            numbers = list(pool.map(issue, range(16)))
        self.assertEqual(len(set(numbers)), 16)
        invoices = self.system.list_invoices(customer_id=self.customer["id"])
        self.assertEqual(len(invoices), 16)
        for invoice in invoices:
            self.assertEqual(len(self.system.get_invoice(invoice["id"])["line_items"]), 1)

    def test_promotion_validation_and_listing(self) -> None:
        with self.assertRaises(ValidationError):
            self.system.create_promotion(
                description="Quá lớn",
                discount_rate=30,
                target_audience="All",
                applicable_service_types=["purchase"],
                start_date="2025-01-01",
                end_date="2025-01-31",
            )
        with self.assertRaisesRegex(ValidationError, "Unknown service types"):
            self.system.create_promotion(
                description="Sai dịch vụ",
                discount_rate=10,
                target_audience="All",
                applicable_service_types=["grooming"],
                start_date="2025-01-01",
                end_date="2025-01-31",
            )
        self.system.create_promotion(
            description="Tháng một",
            discount_rate=10,
            target_audience="All",
            applicable_service_types=["purchase"],
            start_date="2025-01-01",
            end_date="2025-01-31",
            branch_id=self.other_branch["id"],
        )
        listed = self.system.list_promotions(now=dt.datetime(2025, 1, 15))
        self.assertEqual(listed[0]["status"], "active")
        self.assertEqual(listed[0]["applicable_service_types"], ["purchase"])
        self.assertEqual(self.system.list_promotions(branch_id=self.branch["id"]), [])

    def test_membership_recalculation_with_maintenance(self) -> None:
        year = self.today.year
        self.system.create_invoice(
            customer_id=self.customer["id"],
            items=[{"service_type": "purchase", "base_price": 13_000_000}],
            issue_date=f"{year - 1}-06-01",
        )
        self.assertEqual(self.system.get_customer(self.customer["id"])["membership_level"], "VIP")
        invoice = self.system.create_invoice(
            customer_id=self.customer["id"],
            items=[{"service_type": "purchase", "base_price": 9_000_000}],
            issue_date=f"{year}-01-05",
        )
        self.assertTrue(invoice["membership"]["downgraded"])
        self.assertEqual(invoice["membership"]["new_level"], "Thân thiết")

        summary = self.system.recalculate_all_memberships(year=year)
        self.assertEqual(summary, {"updated": 1, "upgraded": 0, "downgraded": 0})
        self.assertEqual(
            self.system.get_customer(self.customer["id"])["membership_level"], "Thân thiết"
        )

        result = self.system.update_customer_membership(
            customer_id=self.customer["id"], year=year + 1
        )
        self.assertTrue(result["downgraded"])
        self.assertEqual(result["new_level"], "Cơ bản")
        self.assertEqual(result["yearly_spending"], 0)


if __name__ == "__main__":
    unittest.main()
