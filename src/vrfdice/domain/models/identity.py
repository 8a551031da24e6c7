from dataclasses import dataclass


@dataclass(frozen=True)
class IdentityContext:
    """The connected player. Passed explicitly instead of read from globals."""

    address: str
    chain_id: int

    @property
    def key(self) -> str:
        return self.address.lower()

    def short(self) -> str:
        return f"{self.address[:6]}...{self.address[-4:]}"
