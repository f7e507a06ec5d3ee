import unittest

from petclinic.clinic.status import (
    BACKEND_STATUSES,
    STATUS_MAP_TO_BACKEND,
    to_backend_status,
    to_frontend_status,
)


class StatusTranslationTestCase(unittest.TestCase):
    def test_forward_table(self) -> None:
        self.assertEqual(to_backend_status("Completed"), "Hoàn thành")
        self.assertEqual(to_backend_status("Confirmed"), "Đã xác nhận")
        self.assertEqual(to_backend_status("In Progress"), "Đang xử lý")
        self.assertEqual(to_backend_status("Cancelled"), "Hủy bỏ")
        self.assertEqual(to_backend_status("Checked-in"), "Đã xác nhận")
        self.assertEqual(to_backend_status("checked-in"), "Đã xác nhận")

    def test_pending_and_scheduled_collapse(self) -> None:
        self.assertEqual(to_backend_status("Scheduled"), to_backend_status("Pending"))
        self.assertEqual(to_backend_status("Pending"), "Đang chờ xác nhận")
        self.assertEqual(to_frontend_status(to_backend_status("Scheduled")), "Pending")

    def test_reverse_table(self) -> None:
        self.assertEqual(to_frontend_status("Hoàn thành"), "Completed")
        self.assertEqual(to_frontend_status("Đang chờ xác nhận"), "Pending")
        self.assertEqual(to_frontend_status("Đã xác nhận"), "Confirmed")
        self.assertEqual(to_frontend_status("Đang xử lý"), "In Progress")
        self.assertEqual(to_frontend_status("Hủy bỏ"), "Cancelled")

    def test_unknown_labels_pass_through(self) -> None:
        self.assertEqual(to_backend_status("unknown-status"), "unknown-status")
        self.assertEqual(to_frontend_status("Đã hủy"), "Đã hủy")
        self.assertEqual(to_backend_status(""), "")

    def test_tables_are_read_only(self) -> None:
        with self.assertRaises(TypeError):
            STATUS_MAP_TO_BACKEND["New"] = "Mới"  # type: ignore[index]
        self.assertEqual(len(BACKEND_STATUSES), 5)


if __name__ == "__main__":
    unittest.main()
