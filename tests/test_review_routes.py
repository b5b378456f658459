from __future__ import annotations

import unittest
import uuid
from contextlib import asynccontextmanager
from types import SimpleNamespace
from unittest import mock

from fastapi.testclient import TestClient
from jose import jwt

from food_review.auth import ReviewActor, require_review_actor
from food_review.config import Settings, get_settings
from food_review.main import app
from food_review.models import ReviewRun, ReviewSuggestion, utcnow
from food_review.ratelimit import limiter
from food_review.routes.review import get_classifier, get_session_factory
from food_review.services.review_runs import ReviewRunConflict


@asynccontextmanager
async def stub_session():
    yield mock.AsyncMock()


class FakeClassifier:
    async def normalize(self, foods):
        return []


class ReviewRouteTestCase(unittest.TestCase):
    def setUp(self):
        self.settings = Settings(
            openai_api_key="sk-test",
            cron_secret="cron-123",
            environment="staging",
            admin_emails=["admin@example.com"],
            auth_disable_verification=True,
            review_default_limit=500,
            review_max_limit=2000,
        )
        self.run_id = uuid.uuid4()
        limiter.enabled = False
        app.dependency_overrides[get_settings] = lambda: self.settings
        app.dependency_overrides[get_session_factory] = lambda: stub_session
        app.dependency_overrides[get_classifier] = lambda: FakeClassifier()
        app.dependency_overrides[require_review_actor] = lambda: ReviewActor(
            run_by="admin@example.com", email="admin@example.com"
        )
        self.client = TestClient(app)

    def tearDown(self):
        app.dependency_overrides.clear()
        limiter.enabled = True

    def _lease(self, **kwargs):
        if "side_effect" not in kwargs:
            kwargs["return_value"] = SimpleNamespace(id=self.run_id, status="running")
        return mock.patch("food_review.routes.review.acquire_run_lease", new=mock.AsyncMock(**kwargs))

    def test_trigger_starts_background_run(self):
        schedule = mock.Mock()
        with self._lease() as lease, mock.patch("food_review.routes.review.schedule_review_run", new=schedule):
            response = self.client.post("/v1/admin/food-review", json={"limit": 50})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"runId": str(self.run_id), "status": "running"})
        self.assertEqual(lease.await_args.kwargs["run_by"], "admin@example.com")
        schedule.assert_called_once()
        self.assertEqual(schedule.call_args.args[0], self.run_id)
        self.assertIsNone(schedule.call_args.kwargs["sink"])
        self.assertEqual(schedule.call_args.kwargs["limit"], 50)
        self.assertEqual(schedule.call_args.kwargs["batch_size"], 20)

    def test_trigger_defaults_and_caps_limit(self):
        schedule = mock.Mock()
        with self._lease(), mock.patch("food_review.routes.review.schedule_review_run", new=schedule):
            self.client.post("/v1/admin/food-review")
            self.client.post("/v1/admin/food-review", json={"limit": 50000})

        limits = [call.kwargs["limit"] for call in schedule.call_args_list]
        self.assertEqual(limits, [500, 2000])

    def test_trigger_rejects_non_positive_limit(self):
        with self._lease() as lease:
            response = self.client.post("/v1/admin/food-review", json={"limit": 0})

        self.assertEqual(response.status_code, 422)
        lease.assert_not_awaited()

    def test_conflict_returns_existing_run_id(self):
        existing = str(uuid.uuid4())
        schedule = mock.Mock()
        with (
            self._lease(side_effect=ReviewRunConflict(existing, "in_progress")),
            mock.patch("food_review.routes.review.schedule_review_run", new=schedule),
        ):
            response = self.client.post("/v1/admin/food-review")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["detail"], {"error": "in_progress", "runId": existing})
        schedule.assert_not_called()

    def test_missing_ai_credentials_returns_503(self):
        del app.dependency_overrides[get_classifier]
        self.settings = self.settings.model_copy(update={"openai_api_key": None})
        with self._lease() as lease:
            response = self.client.post("/v1/admin/food-review")

        self.assertEqual(response.status_code, 503)
        lease.assert_not_awaited()

    def test_stream_emits_progress_events(self):
        def fake_schedule(run_id, *, sink, **kwargs):
            sink.started(str(run_id), 2)
            sink.batch(2, 1)
            sink.done(str(run_id), 2, 1, {"alias": 0, "create": 1, "reject": 0, "delete": 0})
            return mock.Mock()

        with self._lease(), mock.patch("food_review.routes.review.schedule_review_run", new=fake_schedule):
            response = self.client.post("/v1/admin/food-review/stream", json={"limit": 2})

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.headers["content-type"].startswith("text/event-stream"))
        body = response.text
        self.assertLess(body.index("event: started"), body.index("event: batch"))
        self.assertLess(body.index("event: batch"), body.index("event: done"))
        self.assertIn('"suggestionsSoFar":1', body)
        self.assertTrue(body.endswith("\n\n"))

    def test_stream_conflict_returns_409_before_streaming(self):
        existing = str(uuid.uuid4())
        with self._lease(side_effect=ReviewRunConflict(existing, "awaiting_approval")):
            response = self.client.post("/v1/admin/food-review/stream")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["detail"]["error"], "awaiting_approval")

    def test_get_run_returns_record(self):
        run = ReviewRun(
            id=self.run_id,
            status="pending_approval",
            run_by="system-cron",
            started_at=utcnow(),
            completed_at=utcnow(),
            total_processed=45,
            summary={"alias": 1, "create": 20, "reject": 0, "delete": 4},
        )
        with mock.patch("food_review.routes.review.get_review_run", new=mock.AsyncMock(return_value=run)):
            response = self.client.get(f"/v1/admin/food-review/runs/{self.run_id}")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["runId"], str(self.run_id))
        self.assertEqual(payload["status"], "pending_approval")
        self.assertEqual(payload["totalProcessed"], 45)
        self.assertEqual(payload["summary"]["create"], 20)

    def test_get_missing_run_returns_404(self):
        with mock.patch("food_review.routes.review.get_review_run", new=mock.AsyncMock(return_value=None)):
            response = self.client.get(f"/v1/admin/food-review/runs/{self.run_id}")

        self.assertEqual(response.status_code, 404)

    def test_list_suggestions_passes_action_filter(self):
        run = ReviewRun(id=self.run_id, status="pending_approval", started_at=utcnow())
        suggestion = ReviewSuggestion(
            id=uuid.uuid4(),
            run_id=self.run_id,
            food_id=uuid.uuid4(),
            food_name="burk tomater",
            suggested_action="alias",
            target_food_id=uuid.uuid4(),
            target_food_name="Tomater",
            extracted_unit="burk",
            ai_reasoning="Normaliserat till befintligt livsmedel: Tomater",
            ingredient_count=5,
            status="pending",
            created_at=utcnow(),
        )
        listing = mock.AsyncMock(return_value=[suggestion])
        with (
            mock.patch("food_review.routes.review.get_review_run", new=mock.AsyncMock(return_value=run)),
            mock.patch("food_review.routes.review.list_run_suggestions", new=listing),
        ):
            response = self.client.get(f"/v1/admin/food-review/runs/{self.run_id}/suggestions?action=alias")

        self.assertEqual(response.status_code, 200)
        (item,) = response.json()["suggestions"]
        self.assertEqual(item["suggestedAction"], "alias")
        self.assertEqual(item["targetFoodName"], "Tomater")
        self.assertEqual(item["ingredientCount"], 5)
        self.assertEqual(listing.await_args.kwargs["action"], "alias")

    def test_unknown_action_filter_is_rejected(self):
        response = self.client.get(f"/v1/admin/food-review/runs/{self.run_id}/suggestions?action=merge")

        self.assertEqual(response.status_code, 422)

    def test_health_reports_active_runs(self):
        response = self.client.get("/v1/health")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ok")
        self.assertIsInstance(response.json()["activeReviewRuns"], list)


class ReviewAuthTestCase(unittest.TestCase):
    def setUp(self):
        self.settings = Settings(
            openai_api_key="sk-test",
            cron_secret="cron-123",
            environment="staging",
            admin_emails=["admin@example.com"],
            auth_disable_verification=True,
        )
        limiter.enabled = False
        app.dependency_overrides[get_settings] = lambda: self.settings
        app.dependency_overrides[get_session_factory] = lambda: stub_session
        app.dependency_overrides[get_classifier] = lambda: FakeClassifier()
        self.client = TestClient(app)
        self.patches = [
            mock.patch("food_review.auth.get_settings", return_value=self.settings),
            mock.patch("food_review.routes.review.schedule_review_run", new=mock.Mock()),
            mock.patch(
                "food_review.routes.review.acquire_run_lease",
                new=mock.AsyncMock(return_value=SimpleNamespace(id=uuid.uuid4(), status="running")),
            ),
        ]
        for patcher in self.patches:
            patcher.start()

    def tearDown(self):
        for patcher in reversed(self.patches):
            patcher.stop()
        app.dependency_overrides.clear()
        limiter.enabled = True

    def _token(self, email: str) -> str:
        return jwt.encode({"sub": "user_123", "email": email}, "not-verified", algorithm="HS256")

    def test_requires_credentials(self):
        response = self.client.post("/v1/admin/food-review")
        self.assertEqual(response.status_code, 401)

    def test_wrong_cron_secret_is_rejected(self):
        response = self.client.post("/v1/admin/food-review", headers={"X-Cron-Secret": "nope"})
        self.assertEqual(response.status_code, 401)

    def test_cron_secret_runs_as_system(self):
        from food_review.routes import review as review_routes

        response = self.client.post("/v1/admin/food-review", headers={"X-Cron-Secret": "cron-123"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(review_routes.acquire_run_lease.await_args.kwargs["run_by"], "system-cron")

    def test_admin_session_runs_as_admin_email(self):
        from food_review.routes import review as review_routes

        headers = {"Authorization": f"Bearer {self._token('Admin@Example.com')}"}
        response = self.client.post("/v1/admin/food-review", headers=headers)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(review_routes.acquire_run_lease.await_args.kwargs["run_by"], "Admin@Example.com")

    def test_non_admin_session_is_forbidden(self):
        headers = {"Authorization": f"Bearer {self._token('cook@example.com')}"}
        response = self.client.post("/v1/admin/food-review", headers=headers)
        self.assertEqual(response.status_code, 403)


class ReviewRateLimitTestCase(unittest.TestCase):
    def setUp(self):
        self.settings = Settings(openai_api_key="sk-test", review_trigger_rate_limit="2/minute")
        limiter.enabled = True
        limiter.reset()
        app.dependency_overrides[get_settings] = lambda: self.settings
        app.dependency_overrides[get_session_factory] = lambda: stub_session
        app.dependency_overrides[get_classifier] = lambda: FakeClassifier()
        app.dependency_overrides[require_review_actor] = lambda: ReviewActor(run_by="system-cron", via_cron=True)
        self.client = TestClient(app)

    def tearDown(self):
        app.dependency_overrides.clear()
        limiter.reset()

    def test_trigger_is_rate_limited(self):
        lease = mock.AsyncMock(return_value=SimpleNamespace(id=uuid.uuid4(), status="running"))
        with (
            mock.patch("food_review.ratelimit.get_settings", return_value=self.settings),
            mock.patch("food_review.routes.review.acquire_run_lease", new=lease),
            mock.patch("food_review.routes.review.schedule_review_run", new=mock.Mock()),
        ):
            codes = [self.client.post("/v1/admin/food-review").status_code for _ in range(3)]

        self.assertEqual(codes, [200, 200, 429])


if __name__ == "__main__":
    unittest.main()
