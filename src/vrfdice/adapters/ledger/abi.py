"""Minimal ABIs for the dice game and its ERC-20 wager token."""


def _fn(name, inputs, outputs, mutability="view"):
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": outputs,
    }


def _out(*pairs):
    return [{"name": n, "type": t} for n, t in pairs]


def _event(name, params):
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [{"name": n, "type": t, "indexed": idx} for n, t, idx in params],
    }


GAME_TUPLE = {
    "name": "",
    "type": "tuple",
    "components": _out(
        ("isActive", "bool"),
        ("chosenNumber", "uint256"),
        ("result", "uint256"),
        ("amount", "uint256"),
        ("timestamp", "uint256"),
        ("payout", "uint256"),
        ("randomWord", "uint256"),
        ("status", "uint8"),
    ),
}

BET_TUPLE_ARRAY = {
    "name": "",
    "type": "tuple[]",
    "components": _out(
        ("chosenNumber", "uint256"),
        ("rolledNumber", "uint256"),
        ("amount", "uint256"),
        ("timestamp", "uint256"),
    ),
}

DICE_ABI = [
    _fn("playDice", [("chosenNumber", "uint256"), ("amount", "uint256")], [], "nonpayable"),
    _fn("resolveGame", [], [], "nonpayable"),
    _fn("recoverStuckGame", [("player", "address")], [], "nonpayable"),
    _fn("getCurrentGame", [("player", "address")], [GAME_TUPLE]),
    _fn(
        "getCurrentRequestDetails",
        [("player", "address")],
        _out(("requestId", "uint256"), ("requestFulfilled", "bool"), ("requestActive", "bool")),
    ),
    _fn(
        "getPlayerStats",
        [("player", "address")],
        _out(
            ("winRate", "uint256"),
            ("averageBet", "uint256"),
            ("totalGamesWon", "uint256"),
            ("totalGamesLost", "uint256"),
        ),
    ),
    _fn(
        "getUserData",
        [("player", "address")],
        _out(
            ("totalGames", "uint256"),
            ("totalBets", "uint256"),
            ("totalWinnings", "uint256"),
            ("totalLosses", "uint256"),
            ("lastPlayed", "uint256"),
        ),
    ),
    _fn("getPreviousBets", [("player", "address")], [BET_TUPLE_ARRAY]),
    _fn("canStartNewGame", [("player", "address")], _out(("", "bool"))),
    _fn("hasPendingRequest", [("player", "address")], _out(("", "bool"))),
    _event(
        "GameStarted",
        [
            ("player", "address", True),
            ("requestId", "uint256", True),
            ("chosenNumber", "uint256", False),
            ("amount", "uint256", False),
        ],
    ),
    _event(
        "GameCompleted",
        [
            ("player", "address", True),
            ("requestId", "uint256", True),
            ("chosenNumber", "uint256", False),
            ("result", "uint256", False),
            ("amount", "uint256", False),
            ("payout", "uint256", False),
            ("status", "uint8", False),
        ],
    ),
    _event(
        "GameCancelled",
        [
            ("player", "address", True),
            ("requestId", "uint256", True),
            ("reason", "string", False),
        ],
    ),
    _event(
        "RequestFulfilled",
        [
            ("requestId", "uint256", True),
            ("randomWords", "uint256[]", False),
        ],
    ),
]

TOKEN_ABI = [
    _fn("approve", [("spender", "address"), ("amount", "uint256")], _out(("", "bool")), "nonpayable"),
    _fn("allowance", [("owner", "address"), ("spender", "address")], _out(("", "uint256"))),
    _fn("balanceOf", [("account", "address")], _out(("", "uint256"))),
    _fn("decimals", [], _out(("", "uint8"))),
    _event(
        "Approval",
        [
            ("owner", "address", True),
            ("spender", "address", True),
            ("value", "uint256", False),
        ],
    ),
]
