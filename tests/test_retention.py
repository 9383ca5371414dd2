import unittest
from datetime import timedelta

from support import DAY, START_TIME

from pastehost.config import BYTES_PER_MB, normalize_config
from pastehost.errors import DurationParseError, PolicyRejected
from pastehost.retention import RetentionPolicy, parse_duration


class ParseDurationTests(unittest.TestCase):
    def test_single_units(self):
        self.assertEqual(parse_duration("90s"), timedelta(seconds=90))
        self.assertEqual(parse_duration("24h"), timedelta(hours=24))
        self.assertEqual(parse_duration("2w"), timedelta(weeks=2))
        self.assertEqual(parse_duration("250ms"), timedelta(milliseconds=250))

    def test_compound_and_fractional(self):
        self.assertEqual(parse_duration("1h30m"), timedelta(minutes=90))
        self.assertEqual(parse_duration("1.5d"), timedelta(hours=36))
        self.assertEqual(parse_duration(" 7D "), timedelta(days=7))

    def test_out_of_range_values_are_parse_errors(self):
        for value in ["9999999999w", "9" * 400 + "s"]:
            with self.subTest(value=value[:20]):
                with self.assertRaises(DurationParseError):
                    parse_duration(value)

    def test_rejects_malformed_input(self):
        for value in ["", "abc", "10", "5y", "-1h", "1h 30m", None, 42]:
            with self.subTest(value=value):
                with self.assertRaises(DurationParseError):
                    parse_duration(value)


class RetentionPolicyTests(unittest.TestCase):
    def setUp(self):
        self.config = normalize_config({"max_upload_size_mb": 64})
        self.policy = RetentionPolicy(self.config)
        self.max_size = 64 * BYTES_PER_MB

    def test_default_curve_endpoints(self):
        self.assertAlmostEqual(self.policy.default_retention(0, False), 128 * DAY)
        self.assertAlmostEqual(self.policy.default_retention(self.max_size, False), 7 * DAY)
        self.assertAlmostEqual(self.policy.default_retention(0, True), 730 * DAY)
        self.assertAlmostEqual(self.policy.default_retention(self.max_size, True), 30 * DAY)

    def test_default_curve_is_cubic(self):
        half = self.policy.default_retention(self.max_size // 2, False)
        self.assertAlmostEqual(half, 7 * DAY + (121 * DAY) * 0.125)

    def test_larger_uploads_never_outlive_smaller_ones(self):
        sizes = [0, 1024, BYTES_PER_MB, 16 * BYTES_PER_MB, self.max_size]
        retentions = [self.policy.default_retention(size, False) for size in sizes]
        self.assertEqual(retentions, sorted(retentions, reverse=True))

    def test_small_anonymous_paste_gets_near_maximum(self):
        expires_at = self.policy.evaluate(10, False, None, START_TIME)
        self.assertGreater(expires_at - START_TIME, 127.9 * DAY)
        self.assertLessEqual(expires_at - START_TIME, 128 * DAY)

    def test_anonymous_request_is_capped_at_ceiling(self):
        expires_at = self.policy.evaluate(10, False, "400d", START_TIME)
        self.assertEqual(expires_at, START_TIME + 128 * DAY)

    def test_keyed_request_is_not_capped(self):
        expires_at = self.policy.evaluate(10, True, "400d", START_TIME)
        self.assertEqual(expires_at, START_TIME + 400 * DAY)

    def test_explicit_duration_is_honoured(self):
        self.assertEqual(self.policy.evaluate(10, False, "1h", START_TIME), START_TIME + 3600)
        self.assertEqual(
            self.policy.evaluate(10, False, timedelta(minutes=5), START_TIME), START_TIME + 300
        )

    def test_never_requires_owner(self):
        self.assertIsNone(self.policy.evaluate(10, True, "never", START_TIME))
        self.assertIsNone(self.policy.evaluate(10, True, "NEVER", START_TIME))
        with self.assertRaises(PolicyRejected):
            self.policy.evaluate(10, False, "never", START_TIME)

    def test_keyed_expiry_beyond_representable_dates_is_rejected(self):
        with self.assertRaises(PolicyRejected):
            self.policy.evaluate(10, True, "1000000w", START_TIME)
        with self.assertRaises(PolicyRejected):
            self.policy.evaluate(10, True, timedelta(days=999_999_999), START_TIME)

    def test_anonymous_oversized_request_is_capped(self):
        expires_at = self.policy.evaluate(10, False, "1000000w", START_TIME)
        self.assertEqual(expires_at, START_TIME + 128 * DAY)

    def test_zero_duration_is_rejected(self):
        with self.assertRaises(PolicyRejected):
            self.policy.evaluate(10, True, "0s", START_TIME)
        with self.assertRaises(PolicyRejected):
            self.policy.evaluate(10, True, timedelta(seconds=-5), START_TIME)

    def test_unparseable_duration_is_a_validation_error(self):
        with self.assertRaises(DurationParseError):
            self.policy.evaluate(10, True, "soon", START_TIME)

    def test_lower_ceiling_caps_default_retention(self):
        policy = RetentionPolicy(normalize_config({"anon_retention_ceiling_days": 30}))
        self.assertEqual(policy.evaluate(0, False, None, START_TIME), START_TIME + 30 * DAY)

    def test_describe_reports_days(self):
        summary = self.policy.describe()
        self.assertEqual(summary["no_key"]["max_days"], 128.0)
        self.assertEqual(summary["with_key"]["min_days"], 30.0)
        self.assertTrue(summary["with_key"]["never_allowed"])


if __name__ == "__main__":
    unittest.main()
