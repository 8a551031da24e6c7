from .web3_ledger import Web3LedgerAdapter

__all__ = ["Web3LedgerAdapter"]
