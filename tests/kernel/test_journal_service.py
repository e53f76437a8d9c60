"""
Tests for ledger_kernel.services.journal_service -- the Journal Engine.

Covers draft validation, idempotent replay, posting with balance merge,
void-by-reversal and cross-period reversal.  All writes flush inside the
test session; nothing is committed.
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from ledger_kernel.domain.dtos import JournalDraft, JournalLineInput
from ledger_kernel.exceptions import (
    EntryAlreadyReversedError,
    EntryDateOutOfRangeError,
    EntryNotPostedError,
    InvalidAccountError,
    InvalidJournalLineError,
    JournalNotFoundError,
    NotDraftError,
    PeriodNotFoundError,
    PeriodNotOpenError,
    UnbalancedEntryError,
    ValidationError,
)
from ledger_kernel.models.account import AccountStatus
from ledger_kernel.models.journal import JournalEntryStatus, JournalEntryType
from ledger_kernel.selectors.ledger_selector import LedgerSelector
from ledger_kernel.services.account_service import AccountService
from ledger_kernel.services.journal_service import JournalService
from ledger_kernel.services.period_service import PeriodService


def _draft(period, debit_account, credit_account, amount="100.00", **kwargs):
    return JournalDraft(
        period_id=period.id,
        entry_date=kwargs.pop("entry_date", period.start_date),
        lines=(
            JournalLineInput(account_id=debit_account, debit=amount, description="dr"),
            JournalLineInput(account_id=credit_account, credit=amount, description="cr"),
        ),
        **kwargs,
    )


def _balances(session, org_id, period):
    return {
        row.account_code: (row.debit_total, row.credit_total)
        for row in LedgerSelector(session).gl_balances(org_id, period.id)
    }


@pytest.fixture
def journals(session, clock):
    return JournalService(session, clock)


@pytest.fixture
def posted(journals, org_id, actor_id, accounts, periods):
    """A posted 250.00 Rent / Cash entry in January."""
    jan = periods["jan"]
    draft = journals.create_draft(
        org_id, actor_id, _draft(jan, accounts["6000"], accounts["1000"], "250.00"),
    )
    journals.post_draft(org_id, draft.journal_id, actor_id)
    return draft.journal_id


# =============================================================================
# create_draft
# =============================================================================


class TestCreateDraft:
    def test_creates_draft_with_numbered_lines(self, journals, org_id, actor_id, accounts, periods):
        result = journals.create_draft(
            org_id, actor_id,
            _draft(periods["jan"], accounts["6000"], accounts["1000"], memo="January rent"),
        )

        assert result.status == JournalEntryStatus.DRAFT
        assert result.idempotent is False

        entry = journals.get_entry(org_id, result.journal_id)
        assert entry.memo == "January rent"
        assert entry.entry_type == JournalEntryType.GENERAL
        assert [line.line_no for line in entry.lines] == [1, 2]
        assert entry.total_debits == entry.total_credits == Decimal("100.00")

    def test_draft_does_not_touch_balances(self, session, journals, org_id, actor_id, accounts, periods):
        journals.create_draft(
            org_id, actor_id, _draft(periods["jan"], accounts["6000"], accounts["1000"]),
        )
        assert _balances(session, org_id, periods["jan"]) == {}

    def test_unbalanced_rejected(self, journals, org_id, actor_id, accounts, periods):
        draft = JournalDraft(
            period_id=periods["jan"].id,
            entry_date=date(2026, 1, 10),
            lines=(
                JournalLineInput(account_id=accounts["6000"], debit="100.00"),
                JournalLineInput(account_id=accounts["1000"], credit="99.99"),
            ),
        )
        with pytest.raises(UnbalancedEntryError):
            journals.create_draft(org_id, actor_id, draft)

    def test_line_with_both_sides_rejected(self, journals, org_id, actor_id, accounts, periods):
        draft = JournalDraft(
            period_id=periods["jan"].id,
            entry_date=date(2026, 1, 10),
            lines=(
                JournalLineInput(account_id=accounts["6000"], debit="10.00", credit="10.00"),
                JournalLineInput(account_id=accounts["1000"], credit="0.00"),
            ),
        )
        with pytest.raises(InvalidJournalLineError):
            journals.create_draft(org_id, actor_id, draft)

    def test_single_line_rejected(self, journals, org_id, actor_id, accounts, periods):
        draft = JournalDraft(
            period_id=periods["jan"].id,
            entry_date=date(2026, 1, 10),
            lines=(JournalLineInput(account_id=accounts["6000"], debit="10.00"),),
        )
        with pytest.raises(InvalidJournalLineError):
            journals.create_draft(org_id, actor_id, draft)

    def test_negative_amount_rejected(self, journals, org_id, actor_id, accounts, periods):
        with pytest.raises(InvalidJournalLineError):
            journals.create_draft(
                org_id, actor_id,
                _draft(periods["jan"], accounts["6000"], accounts["1000"], "-5.00"),
            )

    @pytest.mark.parametrize("amount", [10.5, "10.005", "abc"])
    def test_bad_amount_rejected(self, journals, org_id, actor_id, accounts, periods, amount):
        with pytest.raises(InvalidJournalLineError):
            journals.create_draft(
                org_id, actor_id,
                _draft(periods["jan"], accounts["6000"], accounts["1000"], amount),
            )

    def test_non_postable_account_rejected(self, journals, org_id, actor_id, accounts, periods):
        with pytest.raises(InvalidAccountError):
            journals.create_draft(
                org_id, actor_id, _draft(periods["jan"], accounts["1"], accounts["1000"]),
            )

    def test_inactive_account_rejected(self, session, journals, org_id, actor_id, accounts, periods):
        AccountService(session).update_account(
            org_id, accounts["6100"], actor_id, status=AccountStatus.INACTIVE,
        )
        with pytest.raises(InvalidAccountError):
            journals.create_draft(
                org_id, actor_id, _draft(periods["jan"], accounts["6100"], accounts["1000"]),
            )

    def test_account_of_other_organization_rejected(self, journals, actor_id, accounts, periods):
        with pytest.raises((InvalidAccountError, PeriodNotFoundError)):
            journals.create_draft(
                uuid4(), actor_id, _draft(periods["jan"], accounts["6000"], accounts["1000"]),
            )

    def test_date_outside_period_rejected(self, journals, org_id, actor_id, accounts, periods):
        with pytest.raises(EntryDateOutOfRangeError):
            journals.create_draft(
                org_id, actor_id,
                _draft(
                    periods["jan"], accounts["6000"], accounts["1000"],
                    entry_date=date(2026, 2, 3),
                ),
            )

    def test_closed_period_rejected(self, session, journals, org_id, actor_id, accounts, periods, clock):
        PeriodService(session, clock).close_period(org_id, periods["jan"].id, actor_id)
        with pytest.raises(PeriodNotOpenError):
            journals.create_draft(
                org_id, actor_id, _draft(periods["jan"], accounts["6000"], accounts["1000"]),
            )

    def test_unknown_entry_type_rejected(self, journals, org_id, actor_id, accounts, periods):
        with pytest.raises(ValidationError):
            journals.create_draft(
                org_id, actor_id,
                _draft(periods["jan"], accounts["6000"], accounts["1000"], entry_type="MISC"),
            )

    def test_overlong_line_description_rejected(self, journals, org_id, actor_id, accounts, periods):
        jan = periods["jan"]
        draft = JournalDraft(
            period_id=jan.id,
            entry_date=jan.start_date,
            lines=(
                JournalLineInput(account_id=accounts["6000"], debit="10", description="x" * 301),
                JournalLineInput(account_id=accounts["1000"], credit="10"),
            ),
        )
        with pytest.raises(InvalidJournalLineError):
            journals.create_draft(org_id, actor_id, draft)

    def test_idempotency_key_replays_existing_entry(self, journals, org_id, actor_id, accounts, periods):
        draft = _draft(
            periods["jan"], accounts["6000"], accounts["1000"], idempotency_key="bill:42",
        )
        first = journals.create_draft(org_id, actor_id, draft)
        second = journals.create_draft(org_id, actor_id, draft)

        assert second.journal_id == first.journal_id
        assert second.idempotent is True
        assert len(journals.list_entries(org_id)) == 1

    def test_idempotency_key_is_scoped_to_organization(
        self, session, journals, actor_id, accounts, periods, clock,
    ):
        other_org = uuid4()
        service = AccountService(session)
        debit = service.create_account(other_org, actor_id, "6000", "Rent", "expense").id
        credit = service.create_account(other_org, actor_id, "1000", "Cash", "asset").id
        other_period = PeriodService(session, clock).create_period(
            other_org, actor_id, "2026-01", date(2026, 1, 1), date(2026, 1, 31),
        )

        first = journals.create_draft(
            periods["jan"].organization_id, actor_id,
            _draft(periods["jan"], accounts["6000"], accounts["1000"], idempotency_key="k"),
        )
        second = journals.create_draft(
            other_org, actor_id, _draft(other_period, debit, credit, idempotency_key="k"),
        )
        assert second.idempotent is False
        assert second.journal_id != first.journal_id


# =============================================================================
# post_draft
# =============================================================================


class TestPostDraft:
    def test_post_merges_balances(self, session, journals, org_id, actor_id, accounts, periods, posted):
        entry = journals.get_entry(org_id, posted)
        assert entry.status == JournalEntryStatus.POSTED
        assert entry.posted_at is not None

        balances = _balances(session, org_id, periods["jan"])
        assert balances["6000"] == (Decimal("250.00"), Decimal("0"))
        assert balances["1000"] == (Decimal("0"), Decimal("250.00"))

    def test_second_posting_adds_to_existing_rows(
        self, session, journals, org_id, actor_id, accounts, periods, posted,
    ):
        draft = journals.create_draft(
            org_id, actor_id, _draft(periods["jan"], accounts["6000"], accounts["1000"], "50.00"),
        )
        journals.post_draft(org_id, draft.journal_id, actor_id)

        balances = _balances(session, org_id, periods["jan"])
        assert balances["6000"][0] == Decimal("300.00")

    def test_post_twice_rejected(self, journals, org_id, actor_id, posted):
        with pytest.raises(NotDraftError):
            journals.post_draft(org_id, posted, actor_id)

    def test_post_revalidates_accounts(self, session, journals, org_id, actor_id, accounts, periods):
        draft = journals.create_draft(
            org_id, actor_id, _draft(periods["jan"], accounts["6100"], accounts["1000"]),
        )
        AccountService(session).update_account(
            org_id, accounts["6100"], actor_id, is_postable=False,
        )
        with pytest.raises(InvalidAccountError):
            journals.post_draft(org_id, draft.journal_id, actor_id)

    def test_unknown_journal(self, journals, org_id, actor_id, accounts, periods):
        with pytest.raises(JournalNotFoundError):
            journals.post_draft(org_id, uuid4(), actor_id)

    def test_posting_logs_event(self, captured_logs, org_id, posted):
        records = [r for r in captured_logs() if r["message"] == "journal_posted"]
        assert records
        assert records[-1]["journal_id"] == str(posted)


# =============================================================================
# void_by_reversal
# =============================================================================


class TestVoidByReversal:
    def test_void_posts_mirror_and_nets_to_zero(
        self, session, journals, org_id, actor_id, periods, posted,
    ):
        result = journals.void_by_reversal(org_id, posted, actor_id, "Duplicate bill")

        assert result.status == JournalEntryStatus.VOIDED
        original = journals.get_entry(org_id, posted)
        reversal = journals.get_entry(org_id, result.reversal_journal_id)

        assert original.status == JournalEntryStatus.VOIDED
        assert original.void_reason == "Duplicate bill"
        assert original.reversed_by_id == reversal.id
        assert reversal.status == JournalEntryStatus.POSTED
        assert reversal.reversal_of_id == posted
        assert reversal.entry_date == original.entry_date
        assert [(line.debit, line.credit) for line in reversal.lines] == [
            (line.credit, line.debit) for line in original.lines
        ]

        for debit, credit in _balances(session, org_id, periods["jan"]).values():
            assert debit == credit

    def test_void_of_full_length_description_fits_column(
        self, journals, org_id, actor_id, accounts, periods,
    ):
        jan = periods["jan"]
        long_text = "y" * 300
        draft = journals.create_draft(
            org_id, actor_id,
            JournalDraft(
                period_id=jan.id,
                entry_date=jan.start_date,
                lines=(
                    JournalLineInput(account_id=accounts["6000"], debit="10", description=long_text),
                    JournalLineInput(account_id=accounts["1000"], credit="10"),
                ),
            ),
        )
        journals.post_draft(org_id, draft.journal_id, actor_id)

        result = journals.void_by_reversal(org_id, draft.journal_id, actor_id, "Wrong vendor")

        reversal = journals.get_entry(org_id, result.reversal_journal_id)
        descriptions = [line.description for line in reversal.lines]
        assert all(len(text) <= 300 for text in descriptions)
        assert all(text.startswith("REV:") for text in descriptions)
        assert descriptions[0] == ("REV: " + long_text)[:300]

    def test_void_draft_rejected(self, journals, org_id, actor_id, accounts, periods):
        draft = journals.create_draft(
            org_id, actor_id, _draft(periods["jan"], accounts["6000"], accounts["1000"]),
        )
        with pytest.raises(EntryNotPostedError):
            journals.void_by_reversal(org_id, draft.journal_id, actor_id, "oops")

    def test_void_twice_rejected(self, journals, org_id, actor_id, posted):
        journals.void_by_reversal(org_id, posted, actor_id, "first")
        with pytest.raises(EntryNotPostedError):
            journals.void_by_reversal(org_id, posted, actor_id, "second")

    @pytest.mark.parametrize("reason", ["", "   ", "x" * 301])
    def test_reason_required(self, journals, org_id, actor_id, posted, reason):
        with pytest.raises(ValidationError):
            journals.void_by_reversal(org_id, posted, actor_id, reason)


# =============================================================================
# reverse_into_period
# =============================================================================


class TestReverseIntoPeriod:
    def test_reversal_dated_at_target_start(self, session, journals, org_id, actor_id, periods, posted):
        feb = periods["feb"]
        result = journals.reverse_into_period(
            org_id, posted, actor_id, target_period_id=feb.id, reason="Auto-reversal",
        )

        original = journals.get_entry(org_id, posted)
        reversal = journals.get_entry(org_id, result.reversal_journal_id)
        assert original.status == JournalEntryStatus.POSTED
        assert original.reversed_by_id == reversal.id
        assert reversal.period_id == feb.id
        assert reversal.entry_date == feb.start_date

        feb_balances = _balances(session, org_id, feb)
        assert feb_balances["6000"] == (Decimal("0"), Decimal("250.00"))

    def test_idempotency_key_replays(self, journals, org_id, actor_id, periods, posted):
        first = journals.reverse_into_period(
            org_id, posted, actor_id, periods["feb"].id, "rev", idempotency_key="rev:1",
        )
        second = journals.reverse_into_period(
            org_id, posted, actor_id, periods["feb"].id, "rev", idempotency_key="rev:1",
        )
        assert second.idempotent is True
        assert second.reversal_journal_id == first.reversal_journal_id

    def test_second_reversal_rejected(self, journals, org_id, actor_id, periods, posted):
        journals.reverse_into_period(org_id, posted, actor_id, periods["feb"].id, "rev")
        with pytest.raises(EntryAlreadyReversedError):
            journals.reverse_into_period(org_id, posted, actor_id, periods["feb"].id, "again")

    def test_closed_target_rejected(self, session, journals, org_id, actor_id, periods, posted, clock):
        PeriodService(session, clock).close_period(org_id, periods["feb"].id, actor_id)
        with pytest.raises(PeriodNotOpenError):
            journals.reverse_into_period(org_id, posted, actor_id, periods["feb"].id, "rev")


# =============================================================================
# Read
# =============================================================================


class TestRead:
    def test_entry_hidden_from_other_organization(self, journals, posted):
        with pytest.raises(JournalNotFoundError):
            journals.get_entry(uuid4(), posted)

    def test_list_entries_filters_by_status(self, journals, org_id, actor_id, accounts, periods, posted):
        journals.create_draft(
            org_id, actor_id, _draft(periods["jan"], accounts["6000"], accounts["1000"]),
        )
        assert len(journals.list_entries(org_id)) == 2
        drafts = journals.list_entries(org_id, status=JournalEntryStatus.DRAFT)
        assert len(drafts) == 1
        assert journals.list_entries(org_id, period_id=periods["feb"].id) == []
