"""
Tests for ledger_services.accrual_runner -- the Accrual Runner.

The runner owns its transactions, so every test commits its setup first
and reads results back through a fresh session_scope.
"""

import threading
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select

from ledger_kernel.db.engine import session_scope
from ledger_kernel.exceptions import (
    InvalidAccountError,
    PeriodNotFoundError,
    PeriodNotOpenError,
)
from ledger_kernel.models.account import AccountStatus
from ledger_kernel.models.journal import JournalEntry, JournalEntryStatus, JournalEntryType
from ledger_kernel.selectors.ledger_selector import LedgerSelector
from ledger_kernel.services.account_service import AccountService
from ledger_kernel.services.journal_service import JournalService
from ledger_kernel.services.period_service import PeriodService
from ledger_services import (
    AccrualFrequency,
    AccrualRuleInput,
    AccrualRuleLineInput,
    AccrualRuleType,
    AccrualRunner,
    AccrualRunStatus,
    AccrualService,
    LineDirection,
)
from ledger_services.accrual_runner import post_idempotency_key


def create_rule(session_factory, org_id, actor_id, accounts, code="RENT", amount="1200.00", **overrides):
    fields = dict(
        code=code,
        name=f"{code} accrual",
        rule_type=AccrualRuleType.RECURRING,
        frequency=AccrualFrequency.DAILY,
        lines=(
            AccrualRuleLineInput(accounts["6000"], LineDirection.DEBIT, amount),
            AccrualRuleLineInput(accounts["2100"], LineDirection.CREDIT, amount),
        ),
    )
    fields.update(overrides)
    with session_scope(session_factory) as session:
        return AccrualService(session).create_rule(org_id, actor_id, AccrualRuleInput(**fields))


def reversing_rule(session_factory, org_id, actor_id, accounts, code="UTIL"):
    return create_rule(
        session_factory, org_id, actor_id, accounts,
        code=code,
        amount="300.00",
        rule_type=AccrualRuleType.REVERSING,
        frequency=AccrualFrequency.PERIOD_END,
        auto_reverse=True,
    )


@pytest.fixture
def runner(session_factory, clock):
    return AccrualRunner(session_factory, clock)


# =============================================================================
# run_one
# =============================================================================


class TestRunOne:
    def test_posts_adjustment_entry(self, runner, session_factory, clock, org_id, actor_id, accounts, periods):
        rule = create_rule(session_factory, org_id, actor_id, accounts)

        outcome = runner.run_one(org_id, actor_id, rule.id, date(2026, 1, 15))

        assert outcome.status == AccrualRunStatus.POSTED
        assert not outcome.skipped
        with session_scope(session_factory) as session:
            entry = JournalService(session, clock).get_entry(org_id, outcome.journal_id)
            assert entry.status == JournalEntryStatus.POSTED
            assert entry.entry_type == JournalEntryType.ADJUSTMENT
            assert entry.entry_date == date(2026, 1, 15)
            assert entry.period_id == periods["jan"].id
            assert entry.idempotency_key == post_idempotency_key(
                rule.id, periods["jan"].id, date(2026, 1, 15)
            )

            run = AccrualService(session).get_run(org_id, outcome.run_id)
            assert run.status == AccrualRunStatus.POSTED
            assert [p.journal_entry_id for p in run.postings] == [outcome.journal_id]

            balances = {
                r.account_code: r.net
                for r in LedgerSelector(session).gl_balances(org_id, periods["jan"].id)
            }
            assert balances == {"2100": Decimal("-1200.00"), "6000": Decimal("1200.00")}

    def test_second_run_same_date_is_skipped(self, runner, session_factory, org_id, actor_id, accounts, periods):
        rule = create_rule(session_factory, org_id, actor_id, accounts)
        first = runner.run_one(org_id, actor_id, rule.id, date(2026, 1, 15))

        second = runner.run_one(org_id, actor_id, rule.id, date(2026, 1, 15))

        assert second.skipped
        assert second.reason == "Already posted"
        assert second.run_id == first.run_id
        with session_scope(session_factory) as session:
            assert len(AccrualService(session).list_runs(org_id, rule_id=rule.id)) == 1

    def test_different_dates_post_separately(self, runner, session_factory, org_id, actor_id, accounts, periods):
        rule = create_rule(session_factory, org_id, actor_id, accounts)
        a = runner.run_one(org_id, actor_id, rule.id, date(2026, 1, 15))
        b = runner.run_one(org_id, actor_id, rule.id, date(2026, 1, 16))
        assert a.journal_id != b.journal_id

    def test_no_open_period_skipped(self, runner, session_factory, org_id, actor_id, accounts, periods):
        rule = create_rule(session_factory, org_id, actor_id, accounts)
        outcome = runner.run_one(org_id, actor_id, rule.id, date(2026, 6, 1))
        assert outcome.skipped
        assert outcome.reason == "No open period for date"
        assert outcome.run_id is None

    @pytest.mark.parametrize(
        "as_of,reason",
        [
            (date(2026, 1, 9), "Before rule start_date"),
            (date(2026, 1, 21), "After rule end_date"),
        ],
    )
    def test_outside_bounds_skipped(self, runner, session_factory, org_id, actor_id, accounts, periods, as_of, reason):
        rule = create_rule(
            session_factory, org_id, actor_id, accounts,
            start_date=date(2026, 1, 10), end_date=date(2026, 1, 20),
        )
        outcome = runner.run_one(org_id, actor_id, rule.id, as_of)
        assert outcome.skipped
        assert outcome.reason == reason

    def test_period_override(self, runner, session_factory, org_id, actor_id, accounts, periods):
        rule = create_rule(session_factory, org_id, actor_id, accounts)
        outcome = runner.run_one(
            org_id, actor_id, rule.id, date(2026, 2, 28), period_id_override=periods["feb"].id,
        )
        assert outcome.status == AccrualRunStatus.POSTED

    def test_closed_override_period_skipped(self, runner, session_factory, clock, org_id, actor_id, accounts, periods):
        rule = create_rule(session_factory, org_id, actor_id, accounts)
        with session_scope(session_factory) as session:
            PeriodService(session, clock).close_period(org_id, periods["jan"].id, actor_id)

        outcome = runner.run_one(
            org_id, actor_id, rule.id, date(2026, 1, 31), period_id_override=periods["jan"].id,
        )
        assert outcome.skipped
        assert outcome.reason == "Target period not open"

    def test_missing_override_period_raises(self, runner, session_factory, org_id, actor_id, accounts, periods):
        from uuid import uuid4

        rule = create_rule(session_factory, org_id, actor_id, accounts)
        with pytest.raises(PeriodNotFoundError):
            runner.run_one(org_id, actor_id, rule.id, date(2026, 1, 15), period_id_override=uuid4())

    def test_posting_failure_marks_run_failed(self, runner, session_factory, org_id, actor_id, accounts, periods, captured_logs):
        rule = create_rule(session_factory, org_id, actor_id, accounts)
        with session_scope(session_factory) as session:
            AccountService(session).update_account(
                org_id, accounts["2100"], actor_id, status=AccountStatus.INACTIVE,
            )

        with pytest.raises(InvalidAccountError):
            runner.run_one(org_id, actor_id, rule.id, date(2026, 1, 15))

        with session_scope(session_factory) as session:
            runs = AccrualService(session).list_runs(org_id, rule_id=rule.id)
            assert len(runs) == 1
            assert runs[0].status == AccrualRunStatus.FAILED
            assert "not active" in runs[0].error
            assert runs[0].postings == ()
        assert any(r["message"] == "accrual_run_failed" for r in captured_logs())

    def test_failed_run_is_retried_in_place(self, runner, session_factory, org_id, actor_id, accounts, periods):
        rule = create_rule(session_factory, org_id, actor_id, accounts)
        with session_scope(session_factory) as session:
            AccountService(session).update_account(
                org_id, accounts["2100"], actor_id, status=AccountStatus.INACTIVE,
            )
        with pytest.raises(InvalidAccountError):
            runner.run_one(org_id, actor_id, rule.id, date(2026, 1, 15))

        with session_scope(session_factory) as session:
            AccountService(session).update_account(
                org_id, accounts["2100"], actor_id, status=AccountStatus.ACTIVE,
            )
        outcome = runner.run_one(org_id, actor_id, rule.id, date(2026, 1, 15))

        assert outcome.status == AccrualRunStatus.POSTED
        with session_scope(session_factory) as session:
            runs = AccrualService(session).list_runs(org_id, rule_id=rule.id)
            assert [r.id for r in runs] == [outcome.run_id]
            assert runs[0].error is None


# =============================================================================
# Batches
# =============================================================================


class TestRunDueAccruals:
    def test_runs_only_due_rules(self, runner, session_factory, org_id, actor_id, accounts, periods):
        daily = create_rule(session_factory, org_id, actor_id, accounts, code="DAILY")
        create_rule(
            session_factory, org_id, actor_id, accounts,
            code="MONTHLY", frequency=AccrualFrequency.MONTHLY, start_date=date(2026, 1, 1),
        )
        create_rule(
            session_factory, org_id, actor_id, accounts,
            code="PE", frequency=AccrualFrequency.PERIOD_END,
        )

        outcomes = runner.run_due_accruals(org_id, actor_id, date(2026, 1, 15))

        assert [o.rule_id for o in outcomes] == [daily.id]
        assert outcomes[0].status == AccrualRunStatus.POSTED

    def test_failure_isolated(self, runner, session_factory, org_id, actor_id, accounts, periods):
        good = create_rule(session_factory, org_id, actor_id, accounts, code="GOOD")
        bad = create_rule(
            session_factory, org_id, actor_id, accounts,
            code="BAD",
            lines=(
                AccrualRuleLineInput(accounts["6100"], LineDirection.DEBIT, "50.00"),
                AccrualRuleLineInput(accounts["1000"], LineDirection.CREDIT, "50.00"),
            ),
        )
        with session_scope(session_factory) as session:
            AccountService(session).update_account(
                org_id, accounts["6100"], actor_id, status=AccountStatus.INACTIVE,
            )

        outcomes = {o.rule_id: o for o in runner.run_due_accruals(org_id, actor_id, date(2026, 1, 15))}

        assert outcomes[good.id].status == AccrualRunStatus.POSTED
        assert outcomes[bad.id].failed
        assert outcomes[bad.id].error

    def test_rerun_is_idempotent(self, runner, session_factory, org_id, actor_id, accounts, periods):
        create_rule(session_factory, org_id, actor_id, accounts)
        runner.run_due_accruals(org_id, actor_id, date(2026, 1, 15))
        again = runner.run_due_accruals(org_id, actor_id, date(2026, 1, 15))
        assert [o.reason for o in again] == ["Already posted"]


class TestRunPeriodEndAccruals:
    def test_runs_period_end_rules_at_period_end(self, runner, session_factory, org_id, actor_id, accounts, periods):
        rule = create_rule(
            session_factory, org_id, actor_id, accounts,
            code="PE", frequency=AccrualFrequency.PERIOD_END,
        )
        create_rule(session_factory, org_id, actor_id, accounts, code="DAILY")

        outcomes = runner.run_period_end_accruals(org_id, actor_id, periods["jan"].id)

        assert [o.rule_id for o in outcomes] == [rule.id]
        with session_scope(session_factory) as session:
            run = AccrualService(session).get_run(org_id, outcomes[0].run_id)
            assert run.as_of_date == date(2026, 1, 31)
            assert run.period_id == periods["jan"].id

    def test_closed_period_rejected(self, runner, session_factory, clock, org_id, actor_id, accounts, periods):
        with session_scope(session_factory) as session:
            PeriodService(session, clock).close_period(org_id, periods["jan"].id, actor_id)
        with pytest.raises(PeriodNotOpenError):
            runner.run_period_end_accruals(org_id, actor_id, periods["jan"].id)


# =============================================================================
# Reversals
# =============================================================================


class TestRunReversals:
    def test_reverses_prior_period_runs(self, runner, session_factory, clock, org_id, actor_id, accounts, periods):
        reversing_rule(session_factory, org_id, actor_id, accounts)
        [posted] = runner.run_period_end_accruals(org_id, actor_id, periods["jan"].id)

        result = runner.run_reversals(org_id, actor_id, periods["feb"].id)

        assert (result.reversed_count, result.failed_count) == (1, 0)
        with session_scope(session_factory) as session:
            run = AccrualService(session).get_run(org_id, posted.run_id)
            assert run.status == AccrualRunStatus.REVERSED
            reversal_id = run.postings[0].reversal_journal_entry_id
            reversal = JournalService(session, clock).get_entry(org_id, reversal_id)
            assert reversal.period_id == periods["feb"].id
            assert reversal.entry_date == date(2026, 2, 1)

            feb = {
                r.account_code: r.net
                for r in LedgerSelector(session).gl_balances(org_id, periods["feb"].id)
            }
            assert feb == {"2100": Decimal("300.00"), "6000": Decimal("-300.00")}

    def test_second_call_reverses_nothing(self, runner, session_factory, org_id, actor_id, accounts, periods):
        reversing_rule(session_factory, org_id, actor_id, accounts)
        runner.run_period_end_accruals(org_id, actor_id, periods["jan"].id)
        runner.run_reversals(org_id, actor_id, periods["feb"].id)

        again = runner.run_reversals(org_id, actor_id, periods["feb"].id)
        assert (again.reversed_count, again.failed_count) == (0, 0)

    def test_same_period_runs_not_reversed(self, runner, session_factory, org_id, actor_id, accounts, periods):
        reversing_rule(session_factory, org_id, actor_id, accounts)
        runner.run_period_end_accruals(org_id, actor_id, periods["feb"].id)

        result = runner.run_reversals(org_id, actor_id, periods["feb"].id)
        assert result.reversed_count == 0

    def test_non_reversing_rules_ignored(self, runner, session_factory, org_id, actor_id, accounts, periods):
        create_rule(
            session_factory, org_id, actor_id, accounts,
            code="PE", frequency=AccrualFrequency.PERIOD_END,
        )
        runner.run_period_end_accruals(org_id, actor_id, periods["jan"].id)
        assert runner.run_reversals(org_id, actor_id, periods["feb"].id).reversed_count == 0

    def test_closed_target_rejected(self, runner, session_factory, clock, org_id, actor_id, accounts, periods):
        with session_scope(session_factory) as session:
            PeriodService(session, clock).close_period(org_id, periods["feb"].id, actor_id)
        with pytest.raises(PeriodNotOpenError):
            runner.run_reversals(org_id, actor_id, periods["feb"].id)

    def test_voided_accrual_entry_not_reversed(self, runner, session_factory, clock, org_id, actor_id, accounts, periods):
        reversing_rule(session_factory, org_id, actor_id, accounts)
        [posted] = runner.run_period_end_accruals(org_id, actor_id, periods["jan"].id)
        with session_scope(session_factory) as session:
            JournalService(session, clock).void_by_reversal(
                org_id, posted.journal_id, actor_id, "entered twice",
            )

        result = runner.run_reversals(org_id, actor_id, periods["feb"].id)

        assert (result.reversed_count, result.failed_count) == (0, 0)
        with session_scope(session_factory) as session:
            run = AccrualService(session).get_run(org_id, posted.run_id)
            assert run.status == AccrualRunStatus.POSTED
            posting = run.postings[0]
            assert posting.reversal_journal_entry_id is None
            assert posting.reversal_failure_count == 0

    def test_reversal_failure_recorded(
        self, runner, session_factory, org_id, actor_id, accounts, periods, monkeypatch,
    ):
        reversing_rule(session_factory, org_id, actor_id, accounts)
        [posted] = runner.run_period_end_accruals(org_id, actor_id, periods["jan"].id)

        def reverse_unavailable(self, *args, **kwargs):
            raise RuntimeError("ledger unavailable")

        monkeypatch.setattr(JournalService, "reverse_into_period", reverse_unavailable)

        result = runner.run_reversals(org_id, actor_id, periods["feb"].id)
        assert (result.reversed_count, result.failed_count) == (0, 1)
        again = runner.run_reversals(org_id, actor_id, periods["feb"].id)
        assert (again.reversed_count, again.failed_count) == (0, 1)

        with session_scope(session_factory) as session:
            run = AccrualService(session).get_run(org_id, posted.run_id)
            assert run.status == AccrualRunStatus.POSTED
            posting = run.postings[0]
            assert posting.reversal_journal_entry_id is None
            assert posting.reversal_failure_count == 2
            assert posting.reversal_failure_reason == "ledger unavailable"


# =============================================================================
# Concurrent duplicates
# =============================================================================


class TestConcurrentRuns:
    def test_losing_duplicate_leaves_posted_run_alone(
        self, runner, session_factory, org_id, actor_id, accounts, periods, monkeypatch, captured_logs,
    ):
        rule = create_rule(session_factory, org_id, actor_id, accounts)
        as_of = date(2026, 1, 15)
        original_post = AccrualRunner._post
        competitor = {}

        def post_after_competitor(self, *args):
            if competitor:
                return original_post(self, *args)
            # A second caller finishes the same run before this one fails.
            competitor["started"] = True
            competitor["outcome"] = runner.run_one(org_id, actor_id, rule.id, as_of)
            raise RuntimeError("connection reset")

        monkeypatch.setattr(AccrualRunner, "_post", post_after_competitor)

        outcome = runner.run_one(org_id, actor_id, rule.id, as_of)

        assert competitor["outcome"].status == AccrualRunStatus.POSTED
        assert outcome.skipped
        assert outcome.reason == "Already posted"
        assert outcome.run_id == competitor["outcome"].run_id
        with session_scope(session_factory) as session:
            runs = AccrualService(session).list_runs(org_id, rule_id=rule.id)
            assert [r.status for r in runs] == [AccrualRunStatus.POSTED]
            assert runs[0].error is None
            assert len(runs[0].postings) == 1
        assert not any(r["message"] == "accrual_run_failed" for r in captured_logs())

    def test_parallel_callers_post_once(self, runner, session_factory, org_id, actor_id, accounts, periods):
        rule = create_rule(session_factory, org_id, actor_id, accounts)
        as_of = date(2026, 1, 15)
        barrier = threading.Barrier(4)
        outcomes, errors = [], []

        def call():
            barrier.wait()
            try:
                outcomes.append(runner.run_one(org_id, actor_id, rule.id, as_of))
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=call) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        posted = [o for o in outcomes if o.status == AccrualRunStatus.POSTED and not o.skipped]
        assert len({o.journal_id for o in posted}) <= 1
        with session_scope(session_factory) as session:
            [run] = AccrualService(session).list_runs(org_id, rule_id=rule.id)
            assert not posted or run.status == AccrualRunStatus.POSTED

        # Callers that lost on a locked database converge on retry.
        final = runner.run_one(org_id, actor_id, rule.id, as_of)
        assert final.status == AccrualRunStatus.POSTED

        key = post_idempotency_key(rule.id, periods["jan"].id, as_of)
        with session_scope(session_factory) as session:
            runs = AccrualService(session).list_runs(org_id, rule_id=rule.id)
            assert [r.status for r in runs] == [AccrualRunStatus.POSTED]
            entries = session.execute(
                select(JournalEntry).where(JournalEntry.idempotency_key == key)
            ).scalars().all()
            assert len(entries) == 1
