"""
Override audit log tests.

Verifies:
- Every resolution writes one row with the rule in effect
- Filtering and pagination
- Summary: counts by outcome, tier, day and approver; approval rate
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from apos_overrides.services import approval_service, audit_service
from apos_overrides.time_utils import utcnow
from apos_overrides.validation import AuthorizationError, ValidationError


@pytest.fixture
def decided(price_override, salesperson, manager):
    """One automatic approval, one manager approval, one denial."""
    auto = price_override(salesperson, "95")
    approved = price_override(salesperson, "85")
    denied = price_override(salesperson, "84")
    approval_service.approve(approved.id, actor_id=manager.id)
    approval_service.deny(denied.id, reason_code="margin", actor_id=manager.id)
    return {"auto": auto, "approved": approved, "denied": denied}


class TestQueryLog:
    def test_newest_first(self, decided):
        log = audit_service.query_log()

        assert log["total"] == 3
        assert [item["outcome"] for item in log["items"]] == ["denied", "approved", "auto_approved"]

    def test_filters(self, decided, salesperson, manager):
        assert audit_service.query_log({"outcome": "denied"})["total"] == 1
        assert audit_service.query_log({"approver_id": manager.id})["total"] == 2
        assert audit_service.query_log({"cashier_id": salesperson.id})["total"] == 3
        assert audit_service.query_log({"request_id": decided["auto"].id})["total"] == 1
        assert audit_service.query_log({"override_type": "discount_percent"})["total"] == 3
        assert audit_service.query_log({"start": utcnow() + timedelta(hours=1)})["total"] == 0

    def test_pagination(self, decided):
        page = audit_service.query_log(page=2, per_page=2)

        assert page["page"] == 2
        assert page["per_page"] == 2
        assert page["total"] == 3
        assert len(page["items"]) == 1

    @pytest.mark.parametrize("page,per_page", [(0, 10), (1, 0), (1, 201)])
    def test_invalid_paging(self, app, page, per_page):
        with pytest.raises(ValidationError):
            audit_service.query_log(page=page, per_page=per_page)

    def test_rows_freeze_rule_values(self, decided):
        item = audit_service.query_log({"request_id": decided["approved"].id})["items"][0]

        assert Decimal(item["rule_snapshot"]["threshold_value"]) == Decimal("10")
        assert [lvl["level"] for lvl in item["rule_snapshot"]["levels"]] == [
            "shift_lead", "manager", "area_manager", "admin",
        ]
        assert Decimal(item["difference_percent"]) == Decimal("15")


class TestSummary:
    def test_summary(self, decided, manager):
        report = audit_service.summary()

        assert report["total"] == 3
        assert report["by_outcome"] == {"auto_approved": 1, "approved": 1, "denied": 1}
        assert report["by_tier"] == {"shift_lead": 1, "manager": 2}
        assert report["approval_rate"] == 66.67
        assert report["by_approver"] == [
            {"approver_id": manager.id, "display_name": "Morgan Manager", "count": 1},
        ]
        assert len(report["by_day"]) == 1
        assert report["by_day"][0]["count"] == 3
        assert report["average_response_ms"] >= 0

    def test_empty_summary(self, app):
        report = audit_service.summary()

        assert report["total"] == 0
        assert report["approval_rate"] is None
        assert report["average_response_ms"] is None

    def test_authorization_denials_are_counted_separately(self, pending_request, shift_lead):
        with pytest.raises(AuthorizationError):
            approval_service.approve(pending_request.id, actor_id=shift_lead.id)

        report = audit_service.summary()
        assert report["by_outcome"] == {"authorization_denied": 1}
        assert report["approval_rate"] is None


class TestAuditRoutes:
    def test_log_and_summary_for_managers(self, client, decided, manager, headers_for):
        headers = headers_for(manager)

        log = client.get("/api/override-audit?outcome=approved&per_page=10", headers=headers)
        assert log.status_code == 200
        assert log.get_json()["total"] == 1

        report = client.get("/api/override-audit/summary", headers=headers)
        assert report.get_json()["approval_rate"] == 66.67

    def test_bad_filter(self, client, manager, headers_for):
        resp = client.get("/api/override-audit?outcome=maybe", headers=headers_for(manager))
        assert resp.status_code == 400
