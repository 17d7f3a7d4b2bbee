"""Test application package."""

from .bank_account import (
    AccountClosed,
    AccountOpened,
    BankAccount,
    CloseAccount,
    DepositMoney,
    MoneyDeposited,
    MoneyWithdrawn,
    OpenAccount,
    WithdrawMoney,
)
from .projections import AccountBalances, DepositCounter
from .upcasters import MoneyDepositedV1ToV2

__all__ = [
    "AccountBalances",
    "AccountClosed",
    "AccountOpened",
    "BankAccount",
    "CloseAccount",
    "DepositCounter",
    "DepositMoney",
    "MoneyDeposited",
    "MoneyDepositedV1ToV2",
    "MoneyWithdrawn",
    "OpenAccount",
    "WithdrawMoney",
]
