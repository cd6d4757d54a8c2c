"""
Standard chart of accounts for the payment back-office.

Escrow, merchant, gateway and platform revenue accounts the event handlers
and the settlement flow post against.  ``seed_chart_of_accounts`` provisions
them once; re-running it only adds codes that are missing.
"""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID, uuid5

from sqlalchemy import select
from sqlalchemy.orm import Session

from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.account import (
    Account,
    AccountCategory,
    AccountStatus,
    AccountType,
    NormalBalance,
)

logger = get_logger("services.chart_of_accounts")

# Deterministic account ids: the same code always gets the same id.
COA_UUID_NS = UUID("6f1c9f0e-3a57-4c2e-9d7b-2b8e5a0c4d11")

ESCROW_BANK = "ESC-001"
ESCROW_LIABILITY = "ESC-002"
MERCHANT_RECEIVABLE = "MER-001"
MERCHANT_PAYABLE = "MER-002"
MERCHANT_SETTLEMENT = "MER-003"
GATEWAY_PAYABLE = "GTW-PAY-001"
PLATFORM_MDR_REVENUE = "REV-001"
PLATFORM_RECEIVABLE = "REV-REC-001"
REFUNDS_PAYABLE = "REF-001"
CHARGEBACK_LIABILITY = "CHB-001"
MANUAL_ADJUSTMENTS = "ADJ-001"
RECONCILIATION_SUSPENSE = "ADJ-002"

GATEWAY_FEE_ACCOUNTS = {
    "razorpay": "GTW-FEE-001",
    "payu": "GTW-FEE-002",
    "ccavenue": "GTW-FEE-003",
}
DEFAULT_GATEWAY = "razorpay"


@dataclass(frozen=True)
class AccountDefinition:
    code: str
    name: str
    account_type: AccountType
    category: AccountCategory
    normal_balance: NormalBalance


def _asset(code, name, account_type):
    return AccountDefinition(code, name, account_type, AccountCategory.ASSET, NormalBalance.DEBIT)


def _liability(code, name, account_type):
    return AccountDefinition(code, name, account_type, AccountCategory.LIABILITY, NormalBalance.CREDIT)


def _revenue(code, name):
    return AccountDefinition(
        code, name, AccountType.PLATFORM_REVENUE, AccountCategory.REVENUE, NormalBalance.CREDIT
    )


def _expense(code, name, account_type):
    return AccountDefinition(code, name, account_type, AccountCategory.EXPENSE, NormalBalance.DEBIT)


CHART_OF_ACCOUNTS: tuple[AccountDefinition, ...] = (
    # Escrow
    _asset(ESCROW_BANK, "Escrow Bank Account - Nodal Account", AccountType.ESCROW),
    _liability(ESCROW_LIABILITY, "Customer Deposits Liability", AccountType.ESCROW),
    _liability(REFUNDS_PAYABLE, "Refunds Payable", AccountType.ESCROW),
    # Merchant
    _asset(MERCHANT_RECEIVABLE, "Merchant Receivables", AccountType.MERCHANT),
    _liability(MERCHANT_PAYABLE, "Merchant Payables", AccountType.MERCHANT),
    _asset(MERCHANT_SETTLEMENT, "Merchant Settlement Account", AccountType.MERCHANT),
    _liability(CHARGEBACK_LIABILITY, "Chargeback Liability", AccountType.MERCHANT),
    # Gateway
    _asset("GTW-001-RZP", "Razorpay Collections", AccountType.GATEWAY),
    _asset("GTW-002-PAYU", "PayU Collections", AccountType.GATEWAY),
    _asset("GTW-003-CCA", "CCAvenue Collections", AccountType.GATEWAY),
    _expense(GATEWAY_FEE_ACCOUNTS["razorpay"], "Razorpay Fee Expense", AccountType.GATEWAY),
    _expense(GATEWAY_FEE_ACCOUNTS["payu"], "PayU Fee Expense", AccountType.GATEWAY),
    _expense(GATEWAY_FEE_ACCOUNTS["ccavenue"], "CCAvenue Fee Expense", AccountType.GATEWAY),
    _liability(GATEWAY_PAYABLE, "Gateway Payables", AccountType.GATEWAY),
    # Platform
    _revenue(PLATFORM_MDR_REVENUE, "Platform Revenue - MDR"),
    _revenue("REV-002", "Commission"),
    _revenue("REV-003", "Convenience Fee"),
    _revenue("REV-004", "Settlement Fee"),
    _asset(PLATFORM_RECEIVABLE, "Platform Receivables", AccountType.PLATFORM_REVENUE),
    _expense(MANUAL_ADJUSTMENTS, "Manual Adjustments", AccountType.PLATFORM_REVENUE),
    _asset(RECONCILIATION_SUSPENSE, "Reconciliation Suspense", AccountType.PLATFORM_REVENUE),
)


def gateway_fee_account(gateway: str | None) -> str:
    """Fee expense account for a gateway; unknown gateways book to the default."""
    key = (gateway or DEFAULT_GATEWAY).lower()
    return GATEWAY_FEE_ACCOUNTS.get(key, GATEWAY_FEE_ACCOUNTS[DEFAULT_GATEWAY])


def seed_chart_of_accounts(
    session: Session,
    actor_id: UUID,
    currency: str = "INR",
    definitions: tuple[AccountDefinition, ...] = CHART_OF_ACCOUNTS,
) -> int:
    """
    Create every account in ``definitions`` that does not exist yet.

    Returns the number of accounts created.  Flushes, does not commit.
    """
    existing = set(session.execute(select(Account.code)).scalars().all())
    created = 0
    for definition in definitions:
        if definition.code in existing:
            continue
        session.add(
            Account(
                id=uuid5(COA_UUID_NS, definition.code),
                code=definition.code,
                name=definition.name,
                account_type=definition.account_type.value,
                category=definition.category.value,
                normal_balance=definition.normal_balance.value,
                status=AccountStatus.ACTIVE.value,
                currency=currency,
                created_by_id=actor_id,
            )
        )
        existing.add(definition.code)
        created += 1
    session.flush()
    logger.info(
        "chart_of_accounts_seeded",
        extra={"accounts_created": created, "total": len(definitions)},
    )
    return created
