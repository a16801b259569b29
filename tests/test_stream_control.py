import unittest

import settings
from app import app
from kv_store import kv_store
from stream_control import get_override


class StreamControlRouteTests(unittest.TestCase):
    def setUp(self) -> None:
        self.client = app.test_client()
        self.match_id = "control-test-match"
        kv_store.delete(f"match:{self.match_id}:override")

    def tearDown(self) -> None:
        kv_store.delete(f"match:{self.match_id}:override")

    def _post(self, **payload):
        return self.client.post("/api/stream-control", json=payload)

    def test_get_defaults_to_auto(self) -> None:
        resp = self.client.get("/api/stream-control", query_string={"matchId": self.match_id})
        self.assertEqual(resp.get_json(), {"source": "AUTO"})

    def test_get_requires_match_id(self) -> None:
        self.assertEqual(self.client.get("/api/stream-control").status_code, 400)

    def test_wrong_secret_is_rejected_without_mutation(self) -> None:
        resp = self._post(matchId=self.match_id, source="echo", secret="wrong")
        self.assertEqual(resp.status_code, 401)
        self.assertIsNone(get_override(self.match_id))

    def test_set_then_get_then_auto_clears(self) -> None:
        secret = settings.STREAM_CONTROL_SECRET
        resp = self._post(matchId=self.match_id, source="echo", secret=secret)
        self.assertEqual(resp.get_json(), {"success": True})

        resp = self.client.get("/api/stream-control", query_string={"matchId": self.match_id})
        self.assertEqual(resp.get_json(), {"source": "echo"})

        self._post(matchId=self.match_id, source="AUTO", secret=secret)
        self.assertIsNone(get_override(self.match_id))

    def test_missing_fields_after_auth_is_400(self) -> None:
        resp = self._post(matchId=self.match_id, secret=settings.STREAM_CONTROL_SECRET)
        self.assertEqual(resp.status_code, 400)


class ProviderRouteTests(unittest.TestCase):
    def setUp(self) -> None:
        self.client = app.test_client()
        for key in ("provider:charlie:stats", "provider:charlie:mobile:sandbox"):
            kv_store.delete(key)

    def test_list_includes_every_provider(self) -> None:
        body = self.client.get("/api/providers").get_json()
        ids = {p["id"] for p in body["providers"]}
        self.assertIn("streamed.pk", ids)
        self.assertIn("default", ids)

    def test_config_for_mobile_uses_sandbox(self) -> None:
        body = self.client.get("/api/providers/charlie/config", query_string={"mobile": "1"}).get_json()
        self.assertTrue(body["use_sandbox"])
        self.assertIn("allow-scripts", body["sandbox"])
        self.assertEqual([s["name"] for s in body["strategies"]], ["sandbox", "permissive-sandbox", "no-sandbox"])

    def test_failure_report_advances_strategy(self) -> None:
        resp = self.client.post("/api/providers/charlie/report", json={"success": False, "mobile": True})
        self.assertEqual(resp.get_json()["next_strategy"]["name"], "permissive-sandbox")

        body = self.client.get("/api/providers/charlie/config", query_string={"mobile": "1"}).get_json()
        self.assertTrue(body["cached"])
        self.assertIn("allow-modals", body["sandbox"])

    def test_report_requires_success_flag(self) -> None:
        resp = self.client.post("/api/providers/charlie/report", json={"mobile": True})
        self.assertEqual(resp.status_code, 400)


if __name__ == "__main__":
    unittest.main()
