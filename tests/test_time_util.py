import unittest
from datetime import datetime


class TestBoundaries(unittest.TestCase):
    def test_ten_minute_status_boundary(self) -> None:
        from wired.util.time import seconds_until_boundary

        self.assertEqual(seconds_until_boundary(datetime(2024, 1, 1, 12, 3, 30), period_minutes=10), 390.0)
        # exactly on a mark waits a full period
        self.assertEqual(seconds_until_boundary(datetime(2024, 1, 1, 12, 10, 0), period_minutes=10), 600.0)

    def test_audit_offset_boundary(self) -> None:
        from wired.util.time import seconds_until_boundary

        self.assertEqual(seconds_until_boundary(datetime(2024, 1, 1, 12, 3, 0), period_minutes=10, offset_minutes=5), 120.0)
        self.assertEqual(seconds_until_boundary(datetime(2024, 1, 1, 12, 7, 0), period_minutes=10, offset_minutes=5), 480.0)

    def test_format_uptime(self) -> None:
        from wired.util.time import format_uptime

        self.assertEqual(format_uptime(3 * 3600 + 25 * 60 + 9), "3h 25m")
        self.assertEqual(format_uptime(-5), "0h 0m")
