from ..ports.ledger import ContractCall


def approve(spender: str, amount: int) -> ContractCall:
    return ContractCall("token", "approve", (spender, amount))


def play_dice(chosen_number: int, amount: int) -> ContractCall:
    return ContractCall("dice", "playDice", (chosen_number, amount))


def resolve_game() -> ContractCall:
    return ContractCall("dice", "resolveGame")


def recover_stuck_game(player: str) -> ContractCall:
    return ContractCall("dice", "recoverStuckGame", (player,))
