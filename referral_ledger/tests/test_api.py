"""
API Tests

Drive the HTTP surface with FastAPI's TestClient on top of the same store the
fixtures populate.
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from referral_ledger.api import create_app


@pytest.fixture
def client(engine, settings):
    return TestClient(create_app(store=engine.store, app_settings=settings))


def as_actor(user):
    return {"X-Actor-Id": str(user.id)}


def generate(client, engine, campaign, user=None):
    response = client.post(
        "/referrals/generate-link",
        json={"campaign_id": str(campaign.id)},
        headers=as_actor(user or engine.referrer),
    )
    return response


def convert(client, code, payload, user=None):
    headers = as_actor(user) if user is not None else {}
    return client.post(f"/referrals/{code}/convert", json=payload, headers=headers)


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_import_builds_no_app(self):
        """Apps are only built through create_app."""
        import referral_ledger.api as api_module

        assert not hasattr(api_module, "app")


class TestReferralFlow:
    """End-to-end referral lifecycle over HTTP."""

    def test_full_lifecycle(self, client, engine, campaign):
        """Generate, click, convert, approve and redeem through the API."""
        response = generate(client, engine, campaign)
        assert response.status_code == 201
        link = response.json()
        assert link["referral_link"] == f"https://refer.example/r/{link['code']}"

        click = client.get(f"/r/{link['code']}")
        assert click.status_code == 200
        assert click.json()["referral"]["status"] == "clicked"
        assert click.json()["campaign_name"] == "Bring a Friend"

        converted = convert(client, link["code"], {
            "name": "Pat Prospect",
            "email": "pat@example.com",
            "conversion_details": {"purchase_amount": 100},
        }, engine.business)
        assert converted.status_code == 200
        body = converted.json()
        assert body["referral"]["status"] == "converted"
        assert body["referral"]["customer_id"] is not None
        rewards = {r["side"]: r for r in body["rewards"]}
        assert Decimal(rewards["customer"]["amount"]) == Decimal("25")
        assert Decimal(rewards["referrer"]["amount"]) == Decimal("10")

        reward_id = rewards["referrer"]["id"]
        approved = client.post(f"/rewards/{reward_id}/approve", headers=as_actor(engine.business))
        assert approved.status_code == 200
        assert approved.json()["reward"]["status"] == "available"

        redeemed = client.post(f"/rewards/{reward_id}/redeem", headers=as_actor(engine.referrer))
        assert redeemed.status_code == 200
        assert redeemed.json()["reward"]["status"] == "redeemed"

        again = client.post(f"/rewards/{reward_id}/redeem", headers=as_actor(engine.referrer))
        assert again.status_code == 409
        assert again.json()["error"] == "conflict"

        mine = client.get("/users/me/rewards", headers=as_actor(engine.referrer))
        assert [r["id"] for r in mine.json()] == [reward_id]

    def test_submit_form_and_duplicate(self, client, engine, campaign):
        """The public form converts once per person."""
        payload = {
            "business_code": "acme-coffee",
            "referrer_code": "jane-acme",
            "name": "Pat Prospect",
            "email": "pat@example.com",
        }
        first = client.post("/referrals/submit", json=payload)
        assert first.status_code == 201
        assert first.json()["message"] == "Referral submitted successfully"

        second = client.post("/referrals/submit", json=payload)
        assert second.status_code == 409
        assert second.json()["detail"] == "This person has already been referred"

    def test_track_click_by_business_code(self, client, engine, campaign):
        generate(client, engine, campaign)

        response = client.post("/referrals/track-click", json={
            "business_code": "acme-coffee", "referrer_code": "jane-acme",
        })

        assert response.status_code == 200
        assert response.json() == {"business_name": "Acme Coffee"}

    def test_reject_referral(self, client, engine, campaign):
        referral_id = generate(client, engine, campaign).json()["referral_id"]

        response = client.post(
            f"/referrals/{referral_id}/reject", json={"reason": "Duplicate"}, headers=as_actor(engine.business),
        )

        assert response.status_code == 200
        assert response.json()["status"] == "rejected"
        assert response.json()["rejection_reason"] == "Duplicate"


class TestErrors:
    """Error translation to HTTP status codes and bodies."""

    def test_missing_actor_is_unauthorized(self, client, campaign):
        response = client.post("/referrals/generate-link", json={"campaign_id": str(campaign.id)})
        assert response.status_code == 401
        assert response.json()["error"] == "unauthorized"

    def test_unknown_actor_is_unauthorized(self, client, campaign):
        response = client.post(
            "/referrals/generate-link", json={"campaign_id": str(campaign.id)}, headers={"X-Actor-Id": str(uuid4())},
        )
        assert response.status_code == 401

    def test_outsider_is_forbidden(self, client, engine, campaign):
        response = generate(client, engine, campaign, user=engine.outsider)
        assert response.status_code == 403
        assert response.json()["error"] == "forbidden"

    def test_unknown_code_is_not_found(self, client):
        response = client.get("/r/doesnotexist")
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_anonymous_convert_is_unauthorized(self, client, engine, campaign):
        """Converting by code needs an actor; nothing is issued without one."""
        code = generate(client, engine, campaign).json()["code"]

        response = convert(client, code, {"email": "anyone@example.com"})

        assert response.status_code == 401
        assert response.json()["error"] == "unauthorized"
        assert engine.rewards.list_for_business(engine.business.id) == []
        assert engine.referrals.get_by_code(code).status.value == "pending"

    def test_referrer_cannot_convert(self, client, engine, campaign):
        code = generate(client, engine, campaign).json()["code"]

        response = convert(client, code, {"email": "pat@example.com"}, engine.referrer)

        assert response.status_code == 403
        assert engine.rewards.list_for_business(engine.business.id) == []

    def test_converted_referral_is_invalid_state(self, client, engine, campaign):
        code = generate(client, engine, campaign).json()["code"]
        convert(client, code, {"email": "pat@example.com"}, engine.business)

        response = convert(client, code, {"email": "sam@example.com"}, engine.business)

        assert response.status_code == 409
        assert response.json()["error"] == "invalid_state"

    def test_malformed_email_reports_field(self, client, engine, campaign):
        code = generate(client, engine, campaign).json()["code"]

        response = convert(client, code, {"email": "not-an-email"}, engine.business)

        assert response.status_code == 422
        body = response.json()
        assert body["error"] == "validation"
        assert "email" in body["fields"]

    def test_own_link_reports_field(self, client, engine, campaign):
        code = generate(client, engine, campaign).json()["code"]

        response = convert(client, code, {"email": "jane@example.com"}, engine.business)

        assert response.status_code == 422
        assert response.json()["fields"] == {"email": "You cannot use your own referral link"}

    def test_daily_range_is_validated(self, client, engine):
        response = client.get(
            f"/analytics/{engine.business.id}/daily", params={"days": 0}, headers=as_actor(engine.business),
        )
        assert response.status_code == 422
        assert "days" in response.json()["fields"]

    def test_sweep_requires_admin(self, client, engine):
        assert client.post("/maintenance/expire-overdue", headers=as_actor(engine.business)).status_code == 403
        response = client.post("/maintenance/expire-overdue", headers=as_actor(engine.admin))
        assert response.status_code == 200
        assert response.json() == {"expired_referrals": [], "expired_rewards": []}


class TestAnalyticsEndpoint:
    def test_business_without_referrals(self, client, engine):
        """A new business gets an all-zero report, not an error."""
        response = client.get(f"/analytics/{engine.business.id}", headers=as_actor(engine.business))

        assert response.status_code == 200
        body = response.json()
        assert body["summary"]["total_referrals"] == 0
        assert body["summary"]["overall_conversion_rate"] == 0
        assert body["top_referrers"] == []
        assert body["recent_activity"] == []
        assert body["reward_analytics"]["total_rewards_issued"] == 0
        assert body["reward_analytics"]["most_popular_reward_type"] is None

    def test_other_business_is_forbidden(self, client, engine):
        response = client.get(f"/analytics/{engine.business.id}", headers=as_actor(engine.referrer))
        assert response.status_code == 403

    def test_report_counts_conversions(self, client, engine, campaign):
        code = generate(client, engine, campaign).json()["code"]
        generate(client, engine, campaign)
        convert(client, code, {"email": "pat@example.com"}, engine.business)

        body = client.get(f"/analytics/{engine.business.id}", headers=as_actor(engine.business)).json()

        assert body["summary"]["total_referrals"] == 2
        assert body["summary"]["total_conversions"] == 1
        assert body["summary"]["overall_conversion_rate"] == 50
        assert body["campaign_performance"][0]["converted_referrals"] == 1
        assert body["top_referrers"][0]["name"] == "Jane Referrer"
        assert body["reward_analytics"]["total_rewards_issued"] == 2
        assert body["reward_analytics"]["redemption_rate"] == 0
        assert Decimal(body["campaign_performance"][0]["rewards_issued"]) == Decimal("25")
