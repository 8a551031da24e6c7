from dataclasses import dataclass

from .base import LedgerEvent


@dataclass
class Approval(LedgerEvent):
    owner: str
    spender: str
    amount: int
