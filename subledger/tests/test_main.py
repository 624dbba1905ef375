import os
import tempfile
import unittest
from decimal import Decimal

from fastapi.testclient import TestClient

from subledger.currency_conversion import StaticRateProvider
from subledger.main import build_services, create_app
from subledger.settings import Settings


class ApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        path = os.path.join(self.tmpdir.name, "api.db")
        settings = Settings(database_url=f"sqlite+aiosqlite:///{path}")
        services = build_services(
            settings,
            provider=StaticRateProvider(rates={"USD": Decimal("1"), "EUR": Decimal("1.08")}),
        )
        self.client_context = TestClient(create_app(settings, services))
        self.client = self.client_context.__enter__()

    def tearDown(self) -> None:
        self.client_context.__exit__(None, None, None)
        self.tmpdir.cleanup()

    def test_health(self) -> None:
        response = self.client.get("/health")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})

    def test_stats_on_empty_store_are_zero(self) -> None:
        response = self.client.get("/stats")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(Decimal(body["total_income_usd"]), Decimal("0"))
        self.assertEqual(Decimal(body["total_profit_usd"]), Decimal("0"))
        self.assertEqual(body["active_income_count"], 0)
        self.assertEqual(len(body["forecast"]), 4)
        self.assertIsNotNone(body["last_rebuilt_at"])
        self.assertNotIn("forecast_sources", body)
        self.assertEqual(body["income_by_day"], [])
        self.assertEqual(body["users_by_month"], [])

    def test_rebuild_endpoint(self) -> None:
        response = self.client.post("/stats/rebuild")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["income_by_month"], [])

    def test_forecast_endpoint(self) -> None:
        response = self.client.post(
            "/forecast",
            json={
                "today": "2024-06-01",
                "obligations": [
                    {
                        "id": "sale-1",
                        "kind": "income",
                        "amount": "10",
                        "currency": "USD",
                        "cycle": "monthly",
                        "due_date": "2024-06-05",
                    },
                    {
                        "id": "svc-1",
                        "kind": "expense",
                        "amount": "30",
                        "currency": "eur",
                        "cycle": 3,
                        "due_date": "2024-05-01",
                    },
                ],
            },
        )

        self.assertEqual(response.status_code, 200)
        months = response.json()
        self.assertEqual([m["month_key"] for m in months], ["2024-06", "2024-07", "2024-08", "2024-09"])
        self.assertEqual(months[0]["month_label"], "June 2024")
        self.assertEqual(Decimal(months[0]["income_usd"]), Decimal("10.00"))
        self.assertEqual(Decimal(months[0]["expense_usd"]), Decimal("32.40"))
        self.assertEqual(Decimal(months[0]["profit_usd"]), Decimal("-22.40"))

    def test_forecast_rejects_unknown_cycle(self) -> None:
        response = self.client.post(
            "/forecast",
            json={
                "today": "2024-06-01",
                "obligations": [
                    {"id": "sale-1", "kind": "income", "amount": "10", "cycle": "fortnightly", "due_date": "2024-06-05"}
                ],
            },
        )

        self.assertEqual(response.status_code, 400)

    def test_activity_changes(self) -> None:
        response = self.client.post(
            "/activity/changes",
            json={"kind": "service", "before": {"activo": True}, "after": {"activo": False}},
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.json(),
            {
                "changes": [
                    {
                        "field_key": "activo",
                        "label": "Status",
                        "old_value": True,
                        "new_value": False,
                        "value_type": "boolean",
                    }
                ],
                "summary": "1 change: Status",
            },
        )


if __name__ == "__main__":
    unittest.main()
