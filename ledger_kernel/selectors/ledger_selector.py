"""
Module: ledger_kernel.selectors.ledger_selector
Responsibility: Read-only ledger queries -- derived account balances, the
    trial balance and per-account entry listings.  The ledger is a derived
    view over entries of posted transactions; no balance is stored anywhere.
Architecture position: Kernel > Selectors.  May import from models/,
    domain DTOs and selectors/base.py.  MUST NOT import from services/.

Invariants enforced:
    - Balances fold over entries whose transaction is posted or reversed.
      A reversal is itself a posted transaction, so an original and its
      reversal net to zero rather than vanishing.
    - Sign convention: +amount when the entry direction matches the
      account's normal balance, -amount otherwise.
    - trial_balance().total_debits == trial_balance().total_credits whenever
      every posted transaction is balanced.

Failure modes:
    - AccountNotFoundError for an unknown account id or code.
    - Zero balances when an account has no entries.

Audit relevance:
    This is the only read path for balances besides the ``account_balances``
    database view; both apply the same fold.
"""

from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from ledger_kernel.domain.dtos import AccountBalance, EntryInfo, TrialBalance
from ledger_kernel.exceptions import AccountNotFoundError
from ledger_kernel.models.account import Account, NormalBalance
from ledger_kernel.models.ledger import (
    EntryDirection,
    LedgerEntry,
    LedgerTransaction,
    TransactionStatus,
)
from ledger_kernel.selectors.base import BaseSelector

BALANCE_STATUSES = (TransactionStatus.POSTED.value, TransactionStatus.REVERSED.value)


def signed_amount(direction: EntryDirection | str, amount: Decimal, normal_balance: NormalBalance | str) -> Decimal:
    """Entry amount signed in the account's normal direction."""
    if EntryDirection(direction).value == NormalBalance(normal_balance).value:
        return amount
    return -amount


def fold_balance(account: Account, entries: Iterable[LedgerEntry]) -> AccountBalance:
    total_debits = Decimal("0")
    total_credits = Decimal("0")
    balance = Decimal("0")
    count = 0
    for entry in entries:
        if EntryDirection(entry.direction) == EntryDirection.DEBIT:
            total_debits += entry.amount
        else:
            total_credits += entry.amount
        balance += signed_amount(entry.direction, entry.amount, account.normal_balance)
        count += 1
    return AccountBalance(
        account_id=account.id,
        account_code=account.code,
        account_name=account.name,
        normal_balance=NormalBalance(account.normal_balance),
        currency=account.currency,
        total_debits=total_debits,
        total_credits=total_credits,
        balance=balance,
        entry_count=count,
    )


class LedgerSelector(BaseSelector[LedgerEntry]):
    """
    Derived balances over posted ledger entries.

    Contract:
        Every method is a read.  ``tenant_id`` filters by the owning
        transaction's tenant; ``as_of`` limits to transactions effective at
        or before that instant.
    """

    def _entries_query(
        self,
        tenant_id: str | None = None,
        as_of: datetime | None = None,
    ):
        query = (
            select(LedgerEntry)
            .join(LedgerTransaction, LedgerEntry.transaction_id == LedgerTransaction.id)
            .where(LedgerTransaction.status.in_(BALANCE_STATUSES))
        )
        if tenant_id is not None:
            query = query.where(LedgerTransaction.tenant_id == tenant_id)
        if as_of is not None:
            query = query.where(LedgerTransaction.effective_at <= as_of)
        return query

    def account_balance(
        self,
        account_id: UUID,
        tenant_id: str | None = None,
        as_of: datetime | None = None,
    ) -> AccountBalance:
        account = self.session.get(Account, account_id)
        if account is None:
            raise AccountNotFoundError(str(account_id))
        return self._balance_for(account, tenant_id, as_of)

    def account_balance_by_code(
        self,
        code: str,
        tenant_id: str | None = None,
        as_of: datetime | None = None,
    ) -> AccountBalance:
        account = self.session.execute(
            select(Account).where(Account.code == code)
        ).scalar_one_or_none()
        if account is None:
            raise AccountNotFoundError(code)
        return self._balance_for(account, tenant_id, as_of)

    def trial_balance(
        self,
        tenant_id: str | None = None,
        as_of: datetime | None = None,
    ) -> TrialBalance:
        """
        Per-account debit and credit totals with the net balance.

        Accounts without entries are included with zero totals so the report
        always lists the full chart of accounts.
        """
        accounts = self.session.execute(select(Account).order_by(Account.code)).scalars().all()
        entries = self.session.execute(self._entries_query(tenant_id, as_of)).scalars().all()

        by_account: dict[UUID, list[LedgerEntry]] = {}
        for entry in entries:
            by_account.setdefault(entry.account_id, []).append(entry)

        rows = tuple(fold_balance(account, by_account.get(account.id, ())) for account in accounts)
        return TrialBalance(
            rows=rows,
            total_debits=sum((row.total_debits for row in rows), Decimal("0")),
            total_credits=sum((row.total_credits for row in rows), Decimal("0")),
        )

    def ledger_summary(self, tenant_id: str | None = None) -> TrialBalance:
        """Trial balance restricted to accounts that carry entries."""
        full = self.trial_balance(tenant_id)
        return TrialBalance(
            rows=tuple(row for row in full.rows if row.entry_count),
            total_debits=full.total_debits,
            total_credits=full.total_credits,
        )

    def account_entries(
        self,
        account_id: UUID,
        tenant_id: str | None = None,
    ) -> list[EntryInfo]:
        """Entries of posted transactions on one account, oldest first."""
        entries = self.session.execute(
            self._entries_query(tenant_id)
            .where(LedgerEntry.account_id == account_id)
            .order_by(LedgerTransaction.effective_at, LedgerEntry.line_seq)
        ).scalars().all()
        return [
            EntryInfo(
                account_id=entry.account_id,
                account_code=entry.account.code,
                direction=EntryDirection(entry.direction),
                amount=entry.amount,
                currency=entry.currency,
                line_seq=entry.line_seq,
                description=entry.description,
            )
            for entry in entries
        ]

    def _balance_for(
        self,
        account: Account,
        tenant_id: str | None,
        as_of: datetime | None,
    ) -> AccountBalance:
        entries = self.session.execute(
            self._entries_query(tenant_id, as_of).where(LedgerEntry.account_id == account.id)
        ).scalars().all()
        return fold_balance(account, entries)
