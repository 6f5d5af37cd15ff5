"""Tests for environment parsing, CORS origins and integer settings."""

import logging
import unittest

from avchat import config


class AppEnvTests(unittest.TestCase):
    def test_resolve_app_env_strips_wrapping_quotes(self):
        resolved = config.resolve_app_env('"development"', None, None)
        self.assertEqual(resolved, "development")

    def test_resolve_app_env_uses_fallback_order(self):
        self.assertEqual(config.resolve_app_env(None, "Dev", "production"), "dev")
        self.assertEqual(config.resolve_app_env(None, None, "staging"), "staging")

    def test_resolve_app_env_defaults_to_production(self):
        self.assertEqual(config.resolve_app_env(None, None, None), "production")


class SettingParsingTests(unittest.TestCase):
    def test_optional_setting_returns_first_non_blank_value(self):
        self.assertEqual(
            config._optional_setting(None, "  ''  ", " 'https://cloud.appwrite.io/v1' "),
            "https://cloud.appwrite.io/v1",
        )

    def test_optional_setting_returns_none_when_all_blank(self):
        self.assertIsNone(config._optional_setting(None, "", '""'))

    def test_parse_int_setting_falls_back_on_garbage(self):
        self.assertEqual(config._parse_int_setting("ten", 30), 30)
        self.assertEqual(config._parse_int_setting(None, 30), 30)

    def test_parse_int_setting_accepts_quoted_values(self):
        self.assertEqual(config._parse_int_setting('"45"', 30), 45)

    def test_parse_int_setting_clamps_to_bounds(self):
        self.assertEqual(config._parse_int_setting("500", 50, minimum=1, maximum=100), 100)
        self.assertEqual(config._parse_int_setting("0", 50, minimum=1, maximum=100), 1)


class CorsConfigTests(unittest.TestCase):
    def test_parse_cors_origins_trims_deduplicates_and_strips_trailing_slash(self):
        parsed = config._parse_cors_origins(
            " https://app.example.com/ ,https://app.example.com, http://localhost:3000/ "
        )
        self.assertEqual(
            parsed,
            ["https://app.example.com", "http://localhost:3000"],
        )

    def test_parse_cors_origins_rejects_wildcard(self):
        with self.assertRaises(ValueError):
            config._parse_cors_origins("*,https://app.example.com")

    def test_resolve_cors_allow_origins_uses_development_defaults(self):
        resolved = config.resolve_cors_allow_origins("", "development")
        self.assertEqual(resolved, ["http://localhost:3000"])

    def test_resolve_cors_allow_origins_requires_explicit_production_origins(self):
        self.assertEqual(config.resolve_cors_allow_origins("", "production"), [])

    def test_resolve_cors_allow_origins_prefers_explicit_values(self):
        resolved = config.resolve_cors_allow_origins(
            "https://a.example.com/, https://b.example.com",
            "production",
        )
        self.assertEqual(resolved, ["https://a.example.com", "https://b.example.com"])


class LoggingConfigTests(unittest.TestCase):
    def test_configure_logging_installs_a_single_handler(self):
        package_logger = logging.getLogger("avchat")
        original_handlers = list(package_logger.handlers)
        original_level = package_logger.level
        package_logger.handlers = []
        try:
            config.configure_logging("debug")
            config.configure_logging("debug")
            self.assertEqual(len(package_logger.handlers), 1)
            self.assertEqual(package_logger.level, logging.DEBUG)
        finally:
            package_logger.handlers = original_handlers
            package_logger.setLevel(original_level)


if __name__ == "__main__":
    unittest.main()
