import json
import math
import unittest

from support import StorageTestCase

from pastehost import config as config_module
from pastehost.config import DEFAULT_CONFIG, load_config, normalize_config, save_config


class NormalizeConfigTests(unittest.TestCase):
    def test_rejects_nan_and_infinity(self):
        config = normalize_config(
            {"max_upload_size_mb": math.nan, "anon_max_retention_days": math.inf}
        )
        self.assertEqual(config["max_upload_size_mb"], DEFAULT_CONFIG["max_upload_size_mb"])
        self.assertEqual(
            config["anon_max_retention_days"], DEFAULT_CONFIG["anon_max_retention_days"]
        )

    def test_non_numeric_values_fall_back_to_defaults(self):
        config = normalize_config({"rate_limit_requests": "lots"})
        self.assertEqual(config["rate_limit_requests"], DEFAULT_CONFIG["rate_limit_requests"])

    def test_tier_maximum_never_below_minimum(self):
        config = normalize_config({"key_min_retention_days": 60, "key_max_retention_days": 10})
        self.assertEqual(config["key_max_retention_days"], 60)

    def test_ceiling_never_below_anonymous_minimum(self):
        config = normalize_config({"anon_min_retention_days": 14, "anon_retention_ceiling_days": 3})
        self.assertEqual(config["anon_retention_ceiling_days"], 14)

    def test_boolean_strings(self):
        config = normalize_config({"block_private_urls": "off", "cleanup_enabled": "yes"})
        self.assertFalse(config["block_private_urls"])
        self.assertTrue(config["cleanup_enabled"])

    def test_unknown_backend_falls_back_to_local(self):
        self.assertEqual(normalize_config({"storage_backend": "ftp"})["storage_backend"], "local")

    def test_base_url_trailing_slash_is_trimmed(self):
        self.assertEqual(
            normalize_config({"base_url": "https://paste.example/"})["base_url"],
            "https://paste.example",
        )

    def test_non_dict_input_yields_defaults(self):
        self.assertEqual(normalize_config(["nope"]), DEFAULT_CONFIG)


class ConfigFileTests(StorageTestCase):
    def test_load_creates_default_file(self):
        config = load_config()
        self.assertEqual(config, normalize_config({}))
        self.assertTrue(config_module.config_path().exists())

    def test_save_then_load_round_trips_overrides(self):
        save_config(dict(DEFAULT_CONFIG, anon_max_retention_days=64.0))
        self.assertEqual(load_config()["anon_max_retention_days"], 64.0)

    def test_corrupt_file_yields_defaults(self):
        config_module.ensure_directories()
        config_module.config_path().write_text("{not json", encoding="utf-8")
        self.assertEqual(load_config(), normalize_config({}))

    def test_invalid_values_on_disk_are_rewritten(self):
        config_module.ensure_directories()
        config_module.config_path().write_text(
            json.dumps({"id_length": 2, "storage_backend": "ftp"}), encoding="utf-8"
        )
        config = load_config()
        self.assertEqual(config["id_length"], DEFAULT_CONFIG["id_length"])
        with config_module.config_path().open(encoding="utf-8") as handle:
            self.assertEqual(json.load(handle)["storage_backend"], "local")

    def test_paths_follow_environment(self):
        self.assertEqual(config_module.uploads_dir(), (self.root / "uploads").resolve())
        self.assertEqual(config_module.db_path(), (self.root / "data" / "pastes.db").resolve())


if __name__ == "__main__":
    unittest.main()
