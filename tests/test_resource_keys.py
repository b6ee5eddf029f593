import unittest

from field_sync.core.utils import format_rfc3339, key_path, normalize_resource_key, parse_rfc3339


class NormalizeResourceKeyTests(unittest.TestCase):
    def test_query_parameters_are_sorted(self) -> None:
        self.assertEqual(
            normalize_resource_key("/api/jobs?status=open&page=2"),
            normalize_resource_key("/api/jobs?page=2&status=open"),
        )

    def test_scheme_host_and_fragment_are_dropped(self) -> None:
        self.assertEqual(normalize_resource_key("https://example.com/api/jobs/42#notes"), "/api/jobs/42")

    def test_slashes_and_dot_segments_collapse(self) -> None:
        self.assertEqual(normalize_resource_key("/api//jobs/./42/"), "/api/jobs/42")
        self.assertEqual(normalize_resource_key("/api/jobs/42/../43"), "/api/jobs/43")

    def test_root_keeps_its_slash(self) -> None:
        self.assertEqual(normalize_resource_key("/"), "/")
        self.assertEqual(normalize_resource_key("index.html"), "/index.html")

    def test_empty_address_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            normalize_resource_key("   ")

    def test_key_path_strips_query(self) -> None:
        self.assertEqual(key_path(normalize_resource_key("/api/jobs?page=1")), "/api/jobs")

    def test_rfc3339_round_trip_keeps_utc(self) -> None:
        parsed = parse_rfc3339("2026-02-01T03:10:56.228000Z")
        self.assertEqual(format_rfc3339(parsed), "2026-02-01T03:10:56.228000Z")


if __name__ == "__main__":
    unittest.main()
