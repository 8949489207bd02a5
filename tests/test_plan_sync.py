from datetime import timedelta

import pytest

from subflow.errors import (
    DuplicateNameError,
    HasActiveSubscriptionsError,
    PaymentGatewayError,
    PlanNotFoundError,
    RemoteCallError,
    TransactionRolledBack,
    ValidationError,
)
from subflow.extensions import db
from subflow.models import GatewayPlan, Plan, PlanSyncIntent, Subscription
from subflow.utils.periods import utcnow


def test_create_plan_replicates_and_records_intent(app, services, make_plan):
    plan_id = make_plan("Pro", price=2999, features=["API access"])
    with app.app_context():
        plan = db.session.get(Plan, plan_id)
        assert plan.gateway_plan_id.startswith("plan_")
        assert plan.features == ["API access"]

        remote = GatewayPlan.query.filter_by(gateway_plan_id=plan.gateway_plan_id).one()
        assert (remote.name, remote.price, remote.billing_interval) == ("Pro", 2999, "MONTHLY")

        intent = PlanSyncIntent.query.one()
        assert intent.action == "CREATE"
        assert intent.state == "COMPLETED"
        assert intent.plan_id == plan_id
        assert remote.sync_ref == intent.sync_ref

def test_create_plan_validation(app, services, make_plan):
    make_plan("Pro")
    with app.app_context():
        with pytest.raises(DuplicateNameError):
            services.plans.create_plan({"name": "Pro", "price": 100, "billingInterval": "MONTHLY"})
        with pytest.raises(ValidationError):
            services.plans.create_plan({"name": "Bad", "price": -1, "billingInterval": "MONTHLY"})
        with pytest.raises(ValidationError):
            services.plans.create_plan({"name": "Bad", "price": 100, "billingInterval": "HOURLY"})
        with pytest.raises(ValidationError):
            services.plans.create_plan({"price": 100, "billingInterval": "MONTHLY"})
        assert Plan.query.count() == 1

def test_remote_failure_rolls_back_local_plan(app, services, monkeypatch):
    def _down(fields):
        raise RuntimeError("gateway down")

    monkeypatch.setattr(services.payments, "create_plan", _down)
    with app.app_context():
        with pytest.raises(RemoteCallError):
            services.plans.create_plan({"name": "Team", "price": 4900, "billingInterval": "MONTHLY"})
        assert Plan.query.count() == 0
        intent = PlanSyncIntent.query.one()
        assert intent.state == "FAILED"
        assert "remote_call_failed" in intent.error

def test_local_commit_failure_compensates_remote(app, services, monkeypatch):
    with app.app_context():
        # Occupies the gateway id the remote side is about to hand out
        db.session.add(Plan(name="Squatter", price=1, currency="USD", billing_interval="MONTHLY",
                            gateway_plan_id="plan_collision"))
        db.session.commit()

    monkeypatch.setattr("subflow.payments.engine.generate_plan_id", lambda: "plan_collision")
    with app.app_context():
        with pytest.raises(TransactionRolledBack):
            services.plans.create_plan({"name": "Team", "price": 4900, "billingInterval": "MONTHLY"})

        assert Plan.query.filter_by(name="Team").count() == 0
        assert GatewayPlan.query.count() == 0
        intent = PlanSyncIntent.query.one()
        assert intent.state == "COMPENSATED"
        assert intent.gateway_plan_id == "plan_collision"

def test_update_plan_propagates(app, services, make_plan):
    plan_id = make_plan("Pro", price=2999)
    with app.app_context():
        plan = services.plans.update_plan(plan_id, {"price": 3499, "name": "Pro Plus"})
        assert (plan.name, plan.price) == ("Pro Plus", 3499)
        remote = GatewayPlan.query.filter_by(gateway_plan_id=plan.gateway_plan_id).one()
        assert (remote.name, remote.price) == ("Pro Plus", 3499)

def test_update_plan_rejected_remotely_rolls_back(app, services, make_plan, monkeypatch):
    plan_id = make_plan("Pro", price=2999)
    monkeypatch.setattr(services.payments, "update_plan", lambda fields: False)
    with app.app_context():
        with pytest.raises(PaymentGatewayError):
            services.plans.update_plan(plan_id, {"price": 1})
        db.session.expire_all()
        assert db.session.get(Plan, plan_id).price == 2999

def test_update_plan_guards(app, services, make_plan):
    make_plan("Basic", price=999)
    pro = make_plan("Pro", price=2999)
    with app.app_context():
        with pytest.raises(PlanNotFoundError):
            services.plans.update_plan("missing", {"price": 1})
        with pytest.raises(DuplicateNameError):
            services.plans.update_plan(pro, {"name": "Basic"})
        with pytest.raises(ValidationError):
            services.plans.update_plan(pro, {})

def test_unreplicated_plan_updates_locally(app, services):
    with app.app_context():
        plan = Plan(name="Local", price=100, currency="USD", billing_interval="MONTHLY")
        db.session.add(plan)
        db.session.commit()
        updated = services.plans.update_plan(plan.id, {"description": "only here"})
        assert updated.description == "only here"
        assert GatewayPlan.query.count() == 0

def test_delete_blocked_until_subscription_cancelled(app, services, scheduler, make_user, make_plan):
    make_user("u1")
    plan_id = make_plan("Pro")
    with app.app_context():
        sub_id = services.subscriptions.create_subscription("u1", plan_id, "pay_abc").id
        gateway_plan_id = db.session.get(Plan, plan_id).gateway_plan_id
    scheduler.run_all()

    with app.app_context():
        with pytest.raises(HasActiveSubscriptionsError):
            services.plans.delete_plan(plan_id)
        assert db.session.get(Plan, plan_id) is not None

        services.subscriptions.cancel_subscription("u1")
        services.plans.delete_plan(plan_id)

        db.session.expire_all()
        assert db.session.get(Plan, plan_id) is None
        assert GatewayPlan.query.filter_by(gateway_plan_id=gateway_plan_id).count() == 0
        # Terminal history survives, detached from the plan
        sub = db.session.get(Subscription, sub_id)
        assert sub.status == "CANCELLED"
        assert sub.plan_id is None

        with pytest.raises(PlanNotFoundError):
            services.plans.delete_plan(plan_id)

def test_sweeper_compensates_stale_create(app, services):
    old = utcnow() - timedelta(minutes=10)
    with app.app_context():
        db.session.add(PlanSyncIntent(action="CREATE", plan_name="Ghost", sync_ref="ref-ghost",
                                      state="STARTED", created_at=old))
        db.session.add(PlanSyncIntent(action="CREATE", plan_name="Fresh", sync_ref="ref-fresh", state="STARTED"))
        db.session.add(PlanSyncIntent(action="UPDATE", plan_name="Stale", sync_ref="ref-upd",
                                      state="STARTED", created_at=old))
        # Remote replica that the lost local commit never recorded
        db.session.add(GatewayPlan(gateway_plan_id="plan_ghost", sync_ref="ref-ghost", name="Ghost",
                                   price=100, currency="USD", billing_interval="MONTHLY"))
        db.session.commit()

        counts = services.plans.sweep_plan_sync_intents(older_than_seconds=300)
        assert counts == {"completed": 0, "compensated": 1, "failed": 1, "pending": 0}

        db.session.expire_all()
        assert GatewayPlan.query.count() == 0
        states = {i.sync_ref: i.state for i in PlanSyncIntent.query.all()}
        assert states == {"ref-ghost": "COMPENSATED", "ref-fresh": "STARTED", "ref-upd": "FAILED"}

def test_sweeper_completes_committed_create(app, services, make_plan):
    plan_id = make_plan("Pro")
    with app.app_context():
        intent = PlanSyncIntent.query.one()
        # Simulate a crash after commit but before the intent bookkeeping
        intent.state = "STARTED"
        intent.created_at = utcnow() - timedelta(hours=1)
        db.session.commit()

        counts = services.plans.sweep_plan_sync_intents(older_than_seconds=60)
        assert counts["completed"] == 1
        db.session.expire_all()
        assert PlanSyncIntent.query.one().state == "COMPLETED"
        assert db.session.get(Plan, plan_id).gateway_plan_id is not None
