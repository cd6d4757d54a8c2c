"""
Module: ledger_kernel.models.account
Responsibility: ORM persistence for the chart of accounts -- the target of
    every ledger entry.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Account.code is unique.
    - Accounts are never deleted, only closed (ORM listener in
      db/immutability.py rejects DELETE).
    - Only ACTIVE accounts accept postings (enforced by LedgerService).

Failure modes:
    - AccountNotFoundError when a posting references a non-existent account.
    - AccountInactiveError when a posting targets an inactive or closed account.

Audit relevance:
    normal_balance decides the sign of every derived balance, so accounts are
    provisioned once by an external chart-of-accounts process and the ledger
    never creates them implicitly.
"""

from enum import Enum

from sqlalchemy import Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import TrackedBase


class AccountType(str, Enum):
    """Business owner of the account."""

    MERCHANT = "merchant"
    GATEWAY = "gateway"
    ESCROW = "escrow"
    PLATFORM_REVENUE = "platform_revenue"


class AccountCategory(str, Enum):
    """Financial statement classification."""

    ASSET = "asset"
    LIABILITY = "liability"
    REVENUE = "revenue"
    EXPENSE = "expense"
    EQUITY = "equity"


class NormalBalance(str, Enum):
    """Side on which the account balance naturally increases."""

    DEBIT = "debit"
    CREDIT = "credit"


class AccountStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    CLOSED = "closed"


class Account(TrackedBase):
    """
    Chart of accounts entry.

    Contract:
        code is globally unique.  Balances are never stored on the account;
        they are derived from ledger entries by LedgerSelector.

    Non-goals:
        - Hierarchies and sub-accounts are not modelled.
    """

    __tablename__ = "ledger_accounts"

    __table_args__ = (
        UniqueConstraint("code", name="uq_ledger_account_code"),
        Index("idx_ledger_account_type", "account_type"),
        Index("idx_ledger_account_status", "status"),
    )

    # Human-readable code (e.g., "ESC-001")
    code: Mapped[str] = mapped_column(String(50), nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    account_type: Mapped[AccountType] = mapped_column(String(30), nullable=False)

    category: Mapped[AccountCategory] = mapped_column(String(20), nullable=False)

    normal_balance: Mapped[NormalBalance] = mapped_column(String(10), nullable=False)

    status: Mapped[AccountStatus] = mapped_column(
        String(20),
        default=AccountStatus.ACTIVE,
        nullable=False,
    )

    currency: Mapped[str] = mapped_column(String(3), default="INR", nullable=False)

    def __repr__(self) -> str:
        return f"<Account {self.code}: {self.name}>"

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE
