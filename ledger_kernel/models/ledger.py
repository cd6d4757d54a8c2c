"""
Module: ledger_kernel.models.ledger
Responsibility: ORM persistence for ledger transactions and their entries --
    the append-only record of every balanced posting.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Σdebits = Σcredits per transaction (LedgerService, before insert).
    - LedgerEntry rows are immutable from creation: no UPDATE, no DELETE
      (ORM listeners + storage triggers).
    - LedgerTransaction is immutable once posted, except the single
      reversal link (status posted -> reversed, reversed_by_id set once).
    - reference and idempotency_key are unique at storage level; the
      idempotency constraint is the at-most-once posting guarantee.

Failure modes:
    - IntegrityError on duplicate reference / idempotency_key (caught by
      LedgerService and resolved to the existing transaction).
    - ImmutabilityViolationError on any other change to posted rows.

Audit relevance:
    Entries are never corrected in place.  A correction is a new reversing
    transaction linked through reverses_id / reversed_by_id, so the original
    posting stays visible forever.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledger_kernel.db.base import Base, TrackedBase, UTCDateTime, UUIDString

if TYPE_CHECKING:
    from ledger_kernel.models.account import Account


class TransactionStatus(str, Enum):
    PENDING = "pending"
    POSTED = "posted"
    REVERSED = "reversed"
    FAILED = "failed"


class EntryDirection(str, Enum):
    """Which side of the transaction an entry is on.

    Amount is always positive; direction determines the sign convention.
    """

    DEBIT = "debit"
    CREDIT = "credit"

    def flipped(self) -> "EntryDirection":
        return EntryDirection.CREDIT if self is EntryDirection.DEBIT else EntryDirection.DEBIT


class LedgerTransaction(TrackedBase):
    """
    A balanced group of ledger entries.

    Contract:
        Created by LedgerService.post_transaction() or reverse_transaction()
        with status POSTED and all entries in the same flush.

    Guarantees:
        - reference unique; idempotency_key unique when present.
        - payload_hash fingerprints the posting request so a reused key with
          a different payload is detectable.
    """

    __tablename__ = "ledger_transactions"

    __table_args__ = (
        UniqueConstraint("reference", name="uq_ledger_transaction_reference"),
        UniqueConstraint("idempotency_key", name="uq_ledger_transaction_idempotency_key"),
        Index("idx_ledger_transaction_tenant_effective", "tenant_id", "effective_at"),
        Index("idx_ledger_transaction_event_type", "event_type"),
        Index("idx_ledger_transaction_status", "status"),
    )

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)

    reference: Mapped[str] = mapped_column(String(100), nullable=False)

    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)

    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    event_type: Mapped[str] = mapped_column(String(50), nullable=False)

    status: Mapped[TransactionStatus] = mapped_column(
        String(20),
        default=TransactionStatus.PENDING,
        nullable=False,
    )

    # Posting date used for period and lock checks
    effective_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    posted_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    description: Mapped[str | None] = mapped_column(String(500), nullable=True)

    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    # Sum of debit entries
    amount: Mapped[Decimal] = mapped_column(nullable=False)

    details: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    reverses_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("ledger_transactions.id"),
        nullable=True,
    )

    reversed_by_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("ledger_transactions.id"),
        nullable=True,
    )

    # Set when the posting went through a SOFT_CLOSED period with an override
    override_log_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("admin_override_logs.id"),
        nullable=True,
    )

    entries: Mapped[list["LedgerEntry"]] = relationship(
        back_populates="transaction",
        order_by="LedgerEntry.line_seq",
    )

    def __repr__(self) -> str:
        return f"<LedgerTransaction {self.reference}: {self.status}>"

    @property
    def is_posted(self) -> bool:
        return self.status == TransactionStatus.POSTED

    @property
    def is_reversed(self) -> bool:
        return self.status == TransactionStatus.REVERSED


class LedgerEntry(Base):
    """
    One debit or credit line of a transaction.

    Contract:
        Append-only.  Inherits Base (not TrackedBase) because there is no
        updated_at: an entry is never updated.
    """

    __tablename__ = "ledger_entries"

    __table_args__ = (
        Index("idx_ledger_entry_account", "account_id"),
        Index("idx_ledger_entry_transaction", "transaction_id"),
    )

    transaction_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("ledger_transactions.id"),
        nullable=False,
    )

    account_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("ledger_accounts.id"),
        nullable=False,
    )

    direction: Mapped[EntryDirection] = mapped_column(String(10), nullable=False)

    # Always positive
    amount: Mapped[Decimal] = mapped_column(nullable=False)

    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    description: Mapped[str | None] = mapped_column(String(500), nullable=True)

    line_seq: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        server_default=func.now(),
        nullable=False,
    )

    transaction: Mapped[LedgerTransaction] = relationship(back_populates="entries")

    account: Mapped["Account"] = relationship()

    def __repr__(self) -> str:
        return f"<LedgerEntry {self.direction} {self.amount} {self.currency}>"
