"""Tests for dynamic approver resolution.

Coverage:
  1. direct manager, department manager and admin fallbacks
  2. finance / compliance managers and their director-email fallback
  3. functional head by department, COO default
  4. executive by amount (CEO above threshold, COO otherwise)
  5. ApproverNotFoundError when even the admin is missing
"""

from decimal import Decimal

import pytest

from backoffice.core.exceptions import ApproverNotFoundError, WorkflowError
from backoffice.models import db
from backoffice.models.directory import User
from backoffice.services import approver_resolution as ar


def _make_user(email, department=None, position=None, user_type="employee", manager_id=None, status="active"):
    user = User(
        email=email,
        user_name=email.split("@")[0],
        department=department,
        position=position,
        user_type=user_type,
        manager_id=manager_id,
        status=status,
    )
    db.session.add(user)
    db.session.flush()
    return user


class TestManager:
    def test_direct_manager(self, org):
        assert ar.manager_id(org["developer"]) == org["it.manager"].id

    def test_inactive_direct_manager_falls_back_to_department_manager(self, org):
        boss = _make_user("old.boss@company.com", department="IT", status="inactive")
        dev = _make_user("new.dev@company.com", department="IT", manager_id=boss.id)
        assert ar.manager_id(dev) == org["it.manager"].id

    def test_no_manager_falls_back_to_admin(self, org):
        loner = _make_user("loner@company.com", department="Nowhere")
        assert ar.manager_id(loner) == org["admin"].id

    def test_missing_admin_raises(self):
        loner = _make_user("loner@company.com", department="Nowhere")
        with pytest.raises(ApproverNotFoundError) as exc:
            ar.manager_id(loner)
        assert exc.value.role == "manager"
        assert isinstance(exc.value, WorkflowError)


class TestDepartmentRoles:
    def test_finance_and_compliance_managers(self, org):
        assert ar.finance_manager_id() == org["finance.manager"].id
        assert ar.compliance_manager_id() == org["compliance.manager"].id

    def test_finance_director_email_fallback(self):
        director = _make_user("finance.director@company.com", department="Elsewhere")
        assert ar.finance_manager_id() == director.id

    def test_compliance_unresolvable(self):
        with pytest.raises(ApproverNotFoundError):
            ar.compliance_manager_id()


class TestFunctionalHead:
    def test_department_head(self, org):
        assert ar.functional_head_id(org["developer"]) == org["cto"].id
        assert ar.functional_head_id(org["trader"]) == org["ceo"].id

    def test_unknown_department_uses_coo(self, org):
        user = _make_user("x@company.com", department="Facilities")
        assert ar.functional_head_id(user) == org["coo"].id

    def test_missing_head_uses_coo(self, org):
        org["cto"].status = "inactive"
        db.session.flush()
        assert ar.functional_head_id(org["developer"]) == org["coo"].id


class TestExecutive:
    def test_small_amount_goes_to_coo(self, org):
        assert ar.executive_id(Decimal("50000")) == org["coo"].id

    def test_threshold_is_exclusive(self, org):
        assert ar.executive_id(Decimal("100000")) == org["coo"].id
        assert ar.executive_id(Decimal("100000.01")) == org["ceo"].id

    def test_fallback_order(self, org):
        org["coo"].status = "inactive"
        db.session.flush()
        assert ar.executive_id(Decimal("10")) == org["ceo"].id

    def test_build_approver_variables(self, org):
        variables = ar.build_approver_variables(org["developer"], Decimal("500"))
        assert variables == {
            "managerId": org["it.manager"].id,
            "financeManagerId": org["finance.manager"].id,
            "complianceManagerId": org["compliance.manager"].id,
            "functionalHeadId": org["cto"].id,
            "executiveId": org["coo"].id,
        }
