import threading
from datetime import datetime, timedelta, timezone

import pytest

from subflow import create_app
from subflow.errors import (
    ConflictError,
    GatewayTimeoutError,
    InvalidPaymentReferenceError,
    InvalidPlanError,
    InvalidTransitionError,
    InvalidUserError,
    PlanNotReplicatedError,
    SamePlanError,
    SubscriptionNotFoundError,
)
from subflow.extensions import db
from subflow.messaging.gateway import MessagingGateway
from subflow.messaging.transport import InMemoryBroker
from subflow.models import BillingHistoryRecord, Payment, Plan, Subscription, User, WebhookEvent
from subflow.services.payment_client import PaymentServiceClient
from subflow.services.subscriptions import SubscriptionStateMachine, apply_transition


def _activate(app, services, scheduler, user_id="u1", plan_id=None, ref="pay_abc"):
    with app.app_context():
        sub = services.subscriptions.create_subscription(user_id, plan_id, ref)
        sub_id = sub.id
    scheduler.run_all()
    return sub_id


def test_create_then_settle_activates(app, services, scheduler, make_user, make_plan):
    make_user("u1")
    plan_id = make_plan("Pro", price=2999)

    with app.app_context():
        sub = services.subscriptions.create_subscription("u1", plan_id, "pay_abc")
        sub_id = sub.id
        assert sub.status == "PENDING"

        records = BillingHistoryRecord.query.filter_by(subscription_id=sub_id).all()
        assert len(records) == 1
        rec = records[0]
        assert (rec.status, rec.amount, rec.currency, rec.gateway_payment_id) == ("PENDING", 2999, "USD", "pay_abc")

        # The payment service received the emitted intent
        payment = Payment.query.filter_by(gateway_payment_id="pay_abc").one()
        assert payment.status == "PENDING"
        assert payment.subscription_id == sub_id

    assert scheduler.run_all() == 1

    with app.app_context():
        sub = db.session.get(Subscription, sub_id)
        assert sub.status == "ACTIVE"
        rec = BillingHistoryRecord.query.filter_by(subscription_id=sub_id).one()
        assert rec.status == "PAID"
        audit = WebhookEvent.query.filter_by(payment_reference="pay_abc").one()
        assert audit.processed is True
        assert audit.subscription_id == sub_id
        # Consumed reference can't start another intent
        assert services.payments.validate_payment_reference("pay_abc") is False

def test_period_end_uses_calendar_months(app, services, make_user, make_plan, monkeypatch):
    make_user("u1")
    plan_id = make_plan("Basic", price=999)
    fixed = datetime(2025, 1, 31, 9, 30, tzinfo=timezone.utc)
    monkeypatch.setattr("subflow.services.subscriptions.utcnow", lambda: fixed)

    with app.app_context():
        sub = services.subscriptions.create_subscription("u1", plan_id, "pay_jan")
        assert sub.current_period_start.replace(tzinfo=None) == datetime(2025, 1, 31, 9, 30)
        assert sub.current_period_end.replace(tzinfo=None) == datetime(2025, 2, 28, 9, 30)

def test_create_rejects_second_open_subscription(app, services, make_user, make_plan):
    make_user("u1")
    plan_id = make_plan()
    with app.app_context():
        services.subscriptions.create_subscription("u1", plan_id, "pay_1")
        # Still PENDING: counts as open
        with pytest.raises(ConflictError):
            services.subscriptions.create_subscription("u1", plan_id, "pay_2")

def test_create_validation_errors(app, services, make_user, make_plan):
    make_user("u1")
    make_user("ghost", is_active=False)
    plan_id = make_plan()
    with app.app_context():
        inactive = Plan(name="Legacy", price=100, currency="USD", billing_interval="MONTHLY", is_active=False)
        db.session.add(inactive)
        db.session.commit()

        with pytest.raises(InvalidUserError):
            services.subscriptions.create_subscription("nobody", plan_id, "pay_1")
        with pytest.raises(InvalidUserError):
            services.subscriptions.create_subscription("ghost", plan_id, "pay_1")
        with pytest.raises(InvalidPlanError):
            services.subscriptions.create_subscription("u1", "missing-plan", "pay_1")
        with pytest.raises(InvalidPlanError):
            services.subscriptions.create_subscription("u1", inactive.id, "pay_1")
        with pytest.raises(InvalidPaymentReferenceError):
            services.subscriptions.create_subscription("u1", plan_id, "")
        assert Subscription.query.count() == 0

def test_create_rejects_consumed_reference(app, services, make_user, make_plan):
    make_user("u1")
    plan_id = make_plan()
    with app.app_context():
        services.payments.create_payment_intent(
            subscription_id=None, user_id="someone", amount=1, currency="USD", payment_reference="pay_used",
        )
        with pytest.raises(InvalidPaymentReferenceError):
            services.subscriptions.create_subscription("u1", plan_id, "pay_used")
        assert Subscription.query.count() == 0

def test_validation_timeout_writes_nothing(app, make_user, make_plan):
    make_user("u1")
    plan_id = make_plan()
    # A broker nobody consumes: the validation request can only time out
    dead = PaymentServiceClient(MessagingGateway(InMemoryBroker(synchronous=True), default_timeout=0.05))
    machine = SubscriptionStateMachine(dead)

    with app.app_context():
        with pytest.raises(GatewayTimeoutError):
            machine.create_subscription("u1", plan_id, "pay_slow")
        assert Subscription.query.count() == 0
        assert BillingHistoryRecord.query.count() == 0

def test_concurrent_create_loses_on_unique_index(app, services, make_user, make_plan, monkeypatch):
    make_user("u1")
    plan_id = make_plan()
    # Both callers pass the pre-check, as two racing requests would
    monkeypatch.setattr(SubscriptionStateMachine, "_open_subscription", lambda self, user_id: None)

    with app.app_context():
        services.subscriptions.create_subscription("u1", plan_id, "pay_a")
        with pytest.raises(ConflictError):
            services.subscriptions.create_subscription("u1", plan_id, "pay_b")
        assert Subscription.query.filter_by(user_id="u1").count() == 1
        assert BillingHistoryRecord.query.count() == 1

def test_update_subscription_migrates_plan(app, services, scheduler, make_user, make_plan):
    make_user("u1")
    basic = make_plan("Basic", price=999)
    pro = make_plan("Pro", price=2999)
    old_id = _activate(app, services, scheduler, plan_id=basic)

    with app.app_context():
        new = services.subscriptions.update_subscription("u1", pro)
        new_id = new.id
        assert new.status == "ACTIVE"
        assert new.plan_id == pro

        old = db.session.get(Subscription, old_id)
        assert old.status == "CANCELLED"
        assert old.cancelled_at is not None

        rec = BillingHistoryRecord.query.filter_by(subscription_id=new_id).one()
        assert rec.status == "PENDING"
        assert rec.amount == 2999
        assert rec.gateway_payment_id.startswith("pay_")
        # Charge starts only once the record is committed, against the new subscription
        payment = Payment.query.filter_by(gateway_payment_id=rec.gateway_payment_id).one()
        assert (payment.status, payment.amount, payment.subscription_id) == ("PENDING", 2999, new_id)

    # Plan change is charged like any other intent
    scheduler.run_all()
    with app.app_context():
        assert BillingHistoryRecord.query.filter_by(subscription_id=new_id).one().status == "PAID"
        assert db.session.get(Subscription, new_id).status == "ACTIVE"

class _EagerScheduler:
    """Settles the moment an intent is created."""

    def __init__(self, app):
        self.app = app

    def call_later(self, delay, fn, *args, **kwargs):
        with self.app.app_context():
            fn(*args, **kwargs)

def test_plan_change_settling_immediately_still_reconciles(app, services, scheduler, make_user, make_plan, monkeypatch):
    make_user("u1")
    basic = make_plan("Basic", price=999)
    pro = make_plan("Pro", price=2999)
    _activate(app, services, scheduler, plan_id=basic)
    monkeypatch.setattr(services.payments, "scheduler", _EagerScheduler(app))

    with app.app_context():
        new_id = services.subscriptions.update_subscription("u1", pro).id

    with app.app_context():
        rec = BillingHistoryRecord.query.filter_by(subscription_id=new_id).one()
        assert rec.status == "PAID"
        assert Payment.query.filter_by(gateway_payment_id=rec.gateway_payment_id).one().subscription_id == new_id
        assert WebhookEvent.query.filter_by(notes="reconciliation_miss").count() == 0
        assert db.session.get(Subscription, new_id).status == "ACTIVE"

def test_update_subscription_guards(app, services, scheduler, make_user, make_plan):
    make_user("u1")
    make_user("u2")
    basic = make_plan("Basic", price=999)
    _activate(app, services, scheduler, plan_id=basic)

    with app.app_context():
        local_only = Plan(name="Local", price=500, currency="USD", billing_interval="MONTHLY")
        db.session.add(local_only)
        db.session.commit()

        with pytest.raises(SubscriptionNotFoundError):
            services.subscriptions.update_subscription("u2", basic)
        with pytest.raises(SamePlanError):
            services.subscriptions.update_subscription("u1", basic)
        with pytest.raises(InvalidPlanError):
            services.subscriptions.update_subscription("u1", "nope")
        with pytest.raises(PlanNotReplicatedError):
            services.subscriptions.update_subscription("u1", local_only.id)

def test_cancel_survives_remote_failure(app, services, scheduler, make_user, make_plan, monkeypatch):
    make_user("u1")
    sub_id = _activate(app, services, scheduler, plan_id=make_plan())

    def _down(**kwargs):
        raise RuntimeError("payment service unavailable")

    monkeypatch.setattr(services.payments, "cancel_subscription", _down)
    with app.app_context():
        sub = services.subscriptions.cancel_subscription("u1")
        assert sub.id == sub_id
        assert sub.status == "CANCELLED"
        assert sub.cancelled_at is not None
        assert services.subscriptions.get_active_subscription("u1") is None

        with pytest.raises(SubscriptionNotFoundError):
            services.subscriptions.cancel_subscription("u1")

def test_cancelled_is_terminal(app, services, scheduler, make_user, make_plan):
    make_user("u1")
    sub_id = _activate(app, services, scheduler, plan_id=make_plan())
    with app.app_context():
        services.subscriptions.cancel_subscription("u1")
        sub = db.session.get(Subscription, sub_id)
        for target in ("ACTIVE", "PAST_DUE", "TRIALING", "PENDING"):
            with pytest.raises(InvalidTransitionError):
                apply_transition(sub, target)
        assert apply_transition(sub, "CANCELLED") is False

def test_trials_then_expiry(app, services, scheduler, make_user, make_plan, monkeypatch):
    monkeypatch.setattr(services.subscriptions, "trials_enabled", True)
    monkeypatch.setattr(services.reconciler, "trials_enabled", True)
    make_user("u1")
    plan_id = make_plan("Pro Trial", price=2999, trialDays=14)

    sub_id = _activate(app, services, scheduler, plan_id=plan_id)
    with app.app_context():
        sub = db.session.get(Subscription, sub_id)
        assert sub.status == "TRIALING"
        assert sub.trial_end is not None

        assert services.subscriptions.expire_trials(now=datetime.now(timezone.utc)) == 0
        later = datetime.now(timezone.utc) + timedelta(days=15)
        assert services.subscriptions.expire_trials(now=later) == 1
        db.session.expire_all()
        assert db.session.get(Subscription, sub_id).status == "ACTIVE"

def test_history_reads(app, services, scheduler, make_user, make_plan):
    make_user("u1")
    make_user("u2")
    sub_id = _activate(app, services, scheduler, plan_id=make_plan())
    with app.app_context():
        assert [s.id for s in services.subscriptions.list_subscriptions("u1")] == [sub_id]
        assert len(services.subscriptions.list_billing_history("u1")) == 1
        assert len(services.subscriptions.list_billing_history("u1", subscription_id=sub_id)) == 1
        assert services.subscriptions.list_billing_history("u2") == []
        with pytest.raises(SubscriptionNotFoundError):
            services.subscriptions.list_billing_history("u2", subscription_id=sub_id)

class _HeldScheduler:
    def __init__(self):
        self.calls = []

    def call_later(self, delay, fn, *args, **kwargs):
        self.calls.append((delay, fn, args, kwargs))

def test_concurrent_create_race_across_threads(tmp_path, monkeypatch):
    # File-backed databases so each thread gets its own connection
    racing = create_app({
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'subscriptions.db'}",
        "SQLALCHEMY_BINDS": {"payments": f"sqlite:///{tmp_path / 'payments.db'}"},
    })
    svc = racing.extensions["subflow"]
    monkeypatch.setattr(svc.payments, "scheduler", _HeldScheduler())
    with racing.app_context():
        db.create_all()
        db.session.add(User(id="u1"))
        plan = Plan(name="Pro", price=2999, currency="USD", billing_interval="MONTHLY")
        db.session.add(plan)
        db.session.commit()
        plan_id = plan.id

    # Both callers run the real open-subscription check before either inserts
    barrier = threading.Barrier(2, timeout=5)
    checked = SubscriptionStateMachine._open_subscription

    def _check_then_wait(self, user_id):
        found = checked(self, user_id)
        barrier.wait()
        return found

    monkeypatch.setattr(SubscriptionStateMachine, "_open_subscription", _check_then_wait)

    outcomes = []

    def _create(ref):
        with racing.app_context():
            try:
                svc.subscriptions.create_subscription("u1", plan_id, ref)
                outcomes.append("created")
            except ConflictError:
                outcomes.append("conflict")

    threads = [threading.Thread(target=_create, args=(ref,)) for ref in ("pay_t1", "pay_t2")]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    try:
        assert sorted(outcomes) == ["conflict", "created"]
        with racing.app_context():
            assert Subscription.query.filter_by(user_id="u1").count() == 1
            assert BillingHistoryRecord.query.count() == 1
            assert Payment.query.count() == 1
    finally:
        with racing.app_context():
            db.drop_all()
        svc.stop()
