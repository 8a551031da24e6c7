from dataclasses import dataclass


@dataclass
class LedgerEvent:
    tx_hash: str
    block_number: int
