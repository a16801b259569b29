import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import match_catalog
import settings
from app import app
from fakes import FakeResponse
from kv_store import kv_store
from match_catalog import (
    OFFICIAL_SOURCE,
    gather_streams,
    is_match_live,
    load_matches_cached,
    normalize_match,
    pick_best_stream,
)
from stream_control import set_override


def _stream(source, no=1, hd=False):
    return {"sourceIdentifier": source, "streamNo": no, "hd": hd, "embedUrl": f"https://e/{source}/{no}"}


class MatchNormalizationTests(unittest.TestCase):
    def test_id_coerced_and_date_defaulted(self) -> None:
        out = normalize_match({"id": 123, "title": "A vs B"})
        self.assertEqual(out["id"], "123")
        self.assertTrue(out["date"])

    def test_live_detection(self) -> None:
        now = datetime(2025, 1, 1, 12, tzinfo=timezone.utc)
        past_ms = int((now - timedelta(minutes=5)).timestamp() * 1000)
        self.assertTrue(is_match_live({"date": past_ms}, now=now))
        self.assertFalse(is_match_live({"date": "2025-01-01T13:00:00Z"}, now=now))


class MatchCacheTests(unittest.TestCase):
    def setUp(self) -> None:
        match_catalog.MATCHES_CACHE["matches"] = []
        match_catalog.MATCHES_CACHE["ts"] = 0.0

    def test_failed_refresh_serves_previous_list(self) -> None:
        with patch("match_catalog.fetch_matches", return_value=[{"id": "1"}]):
            self.assertEqual(load_matches_cached(), [{"id": "1"}])
        with patch("match_catalog.fetch_matches", return_value=None):
            self.assertEqual(load_matches_cached(force=True), [{"id": "1"}])

    def test_cold_failure_is_empty_list(self) -> None:
        with patch("match_catalog.fetch_matches", return_value=None):
            self.assertEqual(load_matches_cached(), [])

    def test_fresh_cache_skips_upstream(self) -> None:
        with patch("match_catalog.fetch_matches", return_value=[{"id": "1"}]) as fetch:
            load_matches_cached()
            load_matches_cached()
        self.assertEqual(fetch.call_count, 1)


class StreamSelectionTests(unittest.TestCase):
    def test_priority_order(self) -> None:
        streams = [_stream("alpha"), _stream("bravo", 2), _stream("bravo", 1), _stream("SULTAN-V1")]
        self.assertEqual(pick_best_stream(streams)["sourceIdentifier"], "SULTAN-V1")
        self.assertEqual(pick_best_stream(streams[:3]), streams[2])
        self.assertEqual(pick_best_stream([_stream("alpha"), _stream("delta", hd=True)])["sourceIdentifier"], "delta")
        self.assertEqual(pick_best_stream([_stream("alpha"), _stream("delta")])["sourceIdentifier"], "alpha")
        self.assertIsNone(pick_best_stream([]))

    def test_official_wins(self) -> None:
        streams = [_stream("SULTAN-V1"), _stream(OFFICIAL_SOURCE)]
        self.assertEqual(pick_best_stream(streams)["sourceIdentifier"], OFFICIAL_SOURCE)

    def test_override_restricts_candidates(self) -> None:
        streams = [_stream(OFFICIAL_SOURCE), _stream("echo", 1), _stream("echo", 2, hd=True)]
        self.assertEqual(pick_best_stream(streams, "echo"), streams[2])
        self.assertEqual(pick_best_stream(streams, "AUTO"), streams[0])
        # unknown override falls back to normal selection
        self.assertEqual(pick_best_stream(streams, "nobody"), streams[0])


class GatherStreamsTests(unittest.TestCase):
    def test_failing_source_contributes_nothing(self) -> None:
        def fake_fetch(url, headers=None):
            if url.endswith("/stream/alpha/a1"):
                return [{"embedUrl": "https://e/a", "streamNo": 1, "language": "English", "hd": True}]
            return None

        match = {"id": "m1", "sources": [{"source": "alpha", "id": "a1"}, {"source": "bravo", "id": "b1"}]}
        with patch("match_catalog._fetch_json", side_effect=fake_fetch):
            streams = gather_streams(match)

        self.assertEqual(len(streams), 1)
        self.assertEqual(streams[0]["sourceIdentifier"], "alpha")
        self.assertEqual(streams[0]["label"], "Stream 1 (English - HD)")

    def test_admin_source_prepends_official_stream(self) -> None:
        def fake_fetch(url, headers=None):
            if url == f"{settings.AGGREGATOR_API_BASE}/api/lookup/adm9":
                return {"found_sultan": True, "sultan_id": "ppv_42"}
            if url == f"{settings.EDGE_API_BASE}/api/v1/streams/ppvsu/42/signed-url":
                return {"proxy_url": "https://edge.example.com/p/42.m3u8"}
            if url.endswith("/stream/admin/adm9"):
                return [{"embedUrl": "https://e/admin", "streamNo": 1}]
            return None

        match = {"id": "m2", "sources": [{"source": "admin", "id": "adm9"}]}
        with patch("match_catalog._fetch_json", side_effect=fake_fetch):
            streams = gather_streams(match)

        self.assertEqual(streams[0]["sourceIdentifier"], OFFICIAL_SOURCE)
        self.assertEqual(streams[0]["embedUrl"], "https://edge.example.com/p/42.m3u8")
        self.assertEqual(streams[1]["sourceIdentifier"], "admin")


class CatalogRouteTests(unittest.TestCase):
    def setUp(self) -> None:
        self.client = app.test_client()

    def test_unknown_match_is_404(self) -> None:
        with patch("match_catalog.load_matches_cached", return_value=[]):
            resp = self.client.get("/api/matches/nope/streams")
        self.assertEqual(resp.status_code, 404)

    def test_match_streams_honour_override(self) -> None:
        match = {"id": "catalog-route-1", "date": 0, "sources": []}
        streams = [_stream(OFFICIAL_SOURCE), _stream("charlie", 1)]
        set_override("catalog-route-1", "charlie")
        try:
            with patch("match_catalog.load_matches_cached", return_value=[match]), patch(
                "match_catalog.gather_streams", return_value=streams
            ):
                body = self.client.get("/api/matches/catalog-route-1/streams").get_json()
        finally:
            kv_store.delete("match:catalog-route-1:override")

        self.assertTrue(body["is_live"])
        self.assertEqual(len(body["streams"]), 2)
        self.assertEqual(body["selected"]["sourceIdentifier"], "charlie")

    def test_upcoming_match_skips_stream_lookup(self) -> None:
        later = (datetime.now(timezone.utc) + timedelta(hours=2)).isoformat()
        match = {"id": "later-1", "date": later, "sources": [{"source": "alpha", "id": "x"}]}
        with patch("match_catalog.load_matches_cached", return_value=[match]), patch(
            "match_catalog.gather_streams"
        ) as gather:
            body = self.client.get("/api/matches/later-1/streams").get_json()
        self.assertFalse(body["is_live"])
        self.assertEqual(body["streams"], [])
        gather.assert_not_called()

    def test_reedstreams_stream_points_at_signed_relay(self) -> None:
        class Session:
            def get(self, url, timeout=None, headers=None):
                return FakeResponse(json_data={"signed_url": "/api/v1/streams/ppvsu/7/playlist.m3u8"})

        with patch("match_catalog._get_session", return_value=Session()):
            resp = self.client.get("/api/reedstreams/stream/7")
        body = resp.get_json()
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(body[0]["sourceIdentifier"], "REEDSTREAMS")
        self.assertTrue(body[0]["embedUrl"].startswith("/api/proxy/signed?url="))
        self.assertEqual(resp.headers["Access-Control-Allow-Origin"], "*")


if __name__ == "__main__":
    unittest.main()
