"""
Tests for the client facade used by the tool screens.
"""

import os
import shutil
import tempfile
from datetime import timedelta
from unittest.mock import patch

import pytest

from studio_credits.config.loader import LedgerConfig, Settings
from studio_credits.core.auth import LocalAuthBackend
from studio_credits.core.client import BalanceChange, adjustment_key, build_client
from studio_credits.core.errors import LedgerError, Unreachable
from studio_credits.core.session import PasswordCredentials, SessionStore
from studio_credits.demo.seed_demo_data import DEMO_IDENTITY, seed_demo_data
from studio_credits.storage.models import JobState, PaymentEvent, utcnow
from studio_credits.storage.repository import AuthRepository, initialize_schema


class TestCreditClient:

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.settings = Settings(database=self.db_path, ledger=LedgerConfig(welcome_grant=100))
        self.client = build_client(self.settings)
        self.balances = []
        self.rejections = []
        self.client.on_balance_changed(self.balances.append)
        self.client.on_job_rejected(self.rejections.append)

    def teardown_method(self):
        self.client.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_balance_without_identity_is_zero(self):
        assert self.client.request_balance(None) == 0
        assert self.balances == []

    def test_first_balance_includes_welcome_grant(self):
        assert self.client.request_balance("alice") == 100
        assert self.balances == [BalanceChange("alice", 100)]

    def test_unchanged_balance_is_not_renotified(self):
        self.client.request_balance("alice")
        self.client.request_balance("alice")
        assert len(self.balances) == 1

    def test_invoke_tool_debits_up_front(self):
        invocation = self.client.invoke_tool("alice", "render", 30)

        assert invocation.proceed is True
        assert invocation.transaction_id is not None
        job = self.client.tracker.get(invocation.job_id)
        assert job.state is JobState.PENDING
        assert job.transaction_id == invocation.transaction_id
        assert self.client.request_balance("alice") == 70
        assert self.balances[-1] == BalanceChange("alice", 70)

    def test_free_tool_proceeds_without_debit(self):
        invocation = self.client.invoke_tool("alice", "preview", 0)

        assert invocation.proceed is True
        assert invocation.transaction_id is None
        assert self.client.request_balance("alice") == 100

    def test_invoke_tool_rejected_when_short(self):
        invocation = self.client.invoke_tool("alice", "render", 150)

        assert invocation.proceed is False
        assert invocation.shortfall == 50
        assert self.client.tracker.get(invocation.job_id).state is JobState.FAILED
        assert len(self.rejections) == 1
        assert self.rejections[0].tool_id == "render"
        assert self.rejections[0].shortfall == 50
        assert self.client.request_balance("alice") == 100

    @pytest.mark.parametrize("cost", [-1, 1.5, True])
    def test_invalid_cost(self, cost):
        with pytest.raises(ValueError):
            self.client.invoke_tool("alice", "render", cost)

    def test_failed_attach_returns_credits(self):
        with patch.object(self.client.tracker, "attach_debit", side_effect=LedgerError("reaped")):
            with pytest.raises(LedgerError):
                self.client.invoke_tool("alice", "render", 30)

        assert self.client.request_balance("alice") == 100
        assert self.client.ledger.reconcile("alice").consistent

    def test_failure_outcome_refunds(self):
        invocation = self.client.invoke_tool("alice", "render", 30)

        self.client.report_outcome(invocation.job_id, success=False)
        self.client.report_outcome(invocation.job_id, success=False)

        assert self.client.tracker.get(invocation.job_id).state is JobState.FAILED
        assert self.client.request_balance("alice") == 100
        assert len(self.client.ledger.history("alice")) == 3

    def test_success_outcome_keeps_debit(self):
        invocation = self.client.invoke_tool("alice", "render", 30)

        self.client.report_outcome(invocation.job_id, success=True, actual_cost=30)

        assert self.client.tracker.get(invocation.job_id).state is JobState.COMPLETED
        assert self.client.request_balance("alice") == 70
        assert len(self.client.ledger.history("alice")) == 2

    @pytest.mark.parametrize("actual_cost,expected_balance", [(45, 55), (10, 90)])
    def test_actual_cost_is_settled(self, actual_cost, expected_balance):
        invocation = self.client.invoke_tool("alice", "render", 30)

        self.client.report_outcome(invocation.job_id, success=True, actual_cost=actual_cost)
        # duplicate success report changes nothing
        self.client.report_outcome(invocation.job_id, success=True, actual_cost=actual_cost)

        assert self.client.request_balance("alice") == expected_balance
        adjustment = self.client.ledger.history("alice", limit=1)[0]
        assert adjustment.correlation_key == adjustment_key(invocation.job_id)

    @pytest.mark.parametrize("actual_cost", [-1000, -1, 1.5, True, "30"])
    def test_invalid_actual_cost_rejected_before_completion(self, actual_cost):
        invocation = self.client.invoke_tool("alice", "render", 30)

        with pytest.raises(ValueError):
            self.client.report_outcome(invocation.job_id, success=True, actual_cost=actual_cost)

        assert self.client.tracker.get(invocation.job_id).state is JobState.PENDING
        assert self.client.request_balance("alice") == 70
        assert len(self.client.ledger.history("alice")) == 2

    def test_refund_lost_on_failure_is_recovered_by_sweep(self):
        invocation = self.client.invoke_tool("alice", "render", 40)

        with patch.object(self.client.ledger, "reverse", side_effect=Unreachable("store down")):
            with pytest.raises(Unreachable):
                self.client.report_outcome(invocation.job_id, success=False)
        # caller retry is a duplicate report
        self.client.report_outcome(invocation.job_id, success=False)
        assert self.client.request_balance("alice") == 60

        report = self.client.tracker.sweep_stale(timedelta(0))

        assert report.reaped == []
        assert report.reclaimed_credits == 40
        assert self.client.tracker.get(invocation.job_id).state is JobState.FAILED
        assert self.client.request_balance("alice") == 100

    def test_unaffordable_extra_cost_is_not_charged(self):
        invocation = self.client.invoke_tool("alice", "render", 90)

        self.client.report_outcome(invocation.job_id, success=True, actual_cost=200)

        assert self.client.tracker.get(invocation.job_id).state is JobState.COMPLETED
        assert self.client.request_balance("alice") == 10

    def test_outcome_after_reap_is_ignored(self):
        invocation = self.client.invoke_tool("alice", "render", 30)
        self.client.tracker.repository.transition(
            invocation.job_id, JobState.REAPED, utcnow(), "stale"
        )

        self.client.report_outcome(invocation.job_id, success=False)

        assert self.client.request_balance("alice") == 70

    def test_purchase_instructions(self):
        instructions = self.client.request_purchase("plan_pro", reference="0901234567")

        assert instructions.amount == 599000
        assert instructions.currency == "VND"
        assert instructions.plan.credits == 7000
        assert instructions.bank_name == self.settings.checkout.bank_name
        assert instructions.transfer_memo == "0901234567 PRO"

    def test_purchase_without_session_uses_guest_reference(self):
        assert self.client.request_purchase("plan_starter").transfer_memo == "GUEST STARTER"

    def test_apply_payment_notifies_new_balance(self):
        self.client.request_balance("alice")

        receipt = self.client.apply_payment(PaymentEvent(
            payment_id="pay1",
            identity="alice",
            plan_id="plan_pro",
            amount=599000,
            currency="VND",
            delivered_at=utcnow(),
        ))

        assert receipt.credits == 7000
        assert self.balances[-1] == BalanceChange("alice", 7100)


class TestClientSession:

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        backend = LocalAuthBackend(AuthRepository(self.db_path), session_ttl=timedelta(hours=1),
                                   bcrypt_rounds=4)
        self.store = SessionStore(backend)
        settings = Settings(database=self.db_path, ledger=LedgerConfig(welcome_grant=100))
        self.client = build_client(settings, session_store=self.store)
        self.balances = []
        self.client.on_balance_changed(self.balances.append)

    def teardown_method(self):
        self.client.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_current_identity_follows_session(self):
        assert self.client.current_identity is None

        session = self.store.sign_in(PasswordCredentials("alice@example.com", "s3cret", sign_up=True))

        identity = self.client.current_identity
        assert identity == session.identity
        assert identity.email == "alice@example.com"
        assert self.client.request_purchase("plan_pro").transfer_memo == "alice@example.com PRO"

    def test_sign_in_publishes_balance(self):
        session = self.store.sign_in(PasswordCredentials("alice@example.com", "s3cret", sign_up=True))
        assert self.balances == [BalanceChange(session.identity.user_id, 100)]

    def test_sign_out_publishes_zero(self):
        self.store.sign_in(PasswordCredentials("alice@example.com", "s3cret", sign_up=True))

        self.store.sign_out()

        assert self.balances[-1] == BalanceChange(None, 0)
        assert self.client.current_identity is None

    def test_close_unsubscribes(self):
        self.client.close()
        self.store.sign_in(PasswordCredentials("alice@example.com", "s3cret", sign_up=True))
        assert self.balances == []


class TestDemoSeed:

    def test_seed_demo_data(self):
        temp_dir = tempfile.mkdtemp()
        try:
            client = seed_demo_data(os.path.join(temp_dir, "demo.db"))

            # welcome 100, completed job -20, pending job -15, Pro plan +7000
            assert client.request_balance(DEMO_IDENTITY) == 7065
            pending = client.tracker.list_jobs(identity=DEMO_IDENTITY, state=JobState.PENDING)
            assert [job.tool_id for job in pending] == ["interior_design"]
            client.close()
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)
