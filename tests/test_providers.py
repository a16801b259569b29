import unittest

from kv_store import KeyValueStore
from providers import (
    best_sandbox_config,
    get_provider_config,
    get_provider_stats,
    provider_success_rate,
    report_failure,
    report_stream_load,
    report_success,
    should_use_sandbox,
)


class ProviderLookupTests(unittest.TestCase):
    def test_exact_substring_and_default(self) -> None:
        self.assertEqual(get_provider_config("echo").id, "echo")
        self.assertEqual(get_provider_config("https://embed.bravo-cdn.example/x").id, "bravo")
        self.assertEqual(get_provider_config("somewhere-else").id, "default")

    def test_sandbox_only_on_mobile(self) -> None:
        self.assertTrue(should_use_sandbox("echo", True))
        self.assertFalse(should_use_sandbox("echo", False))


class ProviderStatsTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = KeyValueStore(None)

    def test_success_rate_defaults_to_100(self) -> None:
        self.assertIsNone(get_provider_stats("echo", self.store))
        self.assertEqual(provider_success_rate("echo", self.store), 100.0)

    def test_counts_accumulate(self) -> None:
        report_stream_load("echo", True, self.store)
        report_stream_load("echo", True, self.store)
        report_stream_load("echo", False, self.store)
        stats = get_provider_stats("echo", self.store)
        self.assertEqual(stats.total_loads, 3)
        self.assertEqual(stats.failed_loads, 1)
        self.assertAlmostEqual(provider_success_rate("echo", self.store), 200 / 3)


class AutoHealTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = KeyValueStore(None)

    def test_fallback_ladder_until_exhausted(self) -> None:
        first = report_failure("bravo", True, "blank frame", self.store)
        self.assertEqual(first.name, "permissive-sandbox")
        second = report_failure("bravo", True, "blank frame", self.store)
        self.assertEqual(second.name, "no-sandbox")
        self.assertIsNone(second.sandbox)
        self.assertIsNone(report_failure("bravo", True, "blank frame", self.store))

        config = best_sandbox_config("bravo", True, self.store)
        self.assertEqual(config, {"use_sandbox": False, "sandbox": None, "cached": True})

    def test_device_classes_are_independent(self) -> None:
        report_failure("bravo", True, "", self.store)
        self.assertFalse(best_sandbox_config("bravo", False, self.store)["cached"])

    def test_success_caches_working_config(self) -> None:
        report_success("admin", True, "allow-scripts", self.store)
        self.assertEqual(
            best_sandbox_config("admin", True, self.store),
            {"use_sandbox": True, "sandbox": "allow-scripts", "cached": True},
        )
        self.assertEqual(get_provider_stats("admin", self.store).successful_loads, 1)


if __name__ == "__main__":
    unittest.main()
