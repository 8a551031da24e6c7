from decimal import Decimal

import pytest

from vrfdice.config import MAX_UINT256, AppConfig

from fakes import DICE, TOKEN

SETTINGS = f"""
[network]
rpc_url = "http://localhost:8545"
chain_id = 11155111

[contracts]
dice = "{DICE}"
token = "{TOKEN}"

[polling]
active_interval_seconds = 5.0
"""


def write_settings(tmp_path, text=SETTINGS):
    path = tmp_path / "settings.toml"
    path.write_text(text, encoding="utf-8")
    return str(path)


def test_defaults_fill_missing_sections(tmp_path, monkeypatch):
    cfg = AppConfig.load(write_settings(tmp_path), env_prefix="VRFDICE_TEST__")
    assert cfg.wager.min_bet == Decimal("1")
    assert cfg.wager.max_choice == 6
    assert cfg.polling.idle_interval_seconds == 30.0
    assert cfg.transactions.timeout_seconds == 120.0
    assert cfg.recovery.threshold_seconds == 300.0
    assert cfg.recovery.cooldown_seconds == 5.0
    assert cfg.approval.approval_amount(10) == MAX_UINT256
    assert cfg.loaded_files == ["settings.toml"]


def test_env_overrides_win_and_are_recorded(tmp_path, monkeypatch):
    monkeypatch.setenv("VRFDICE_TEST__POLLING__ACTIVE_INTERVAL_SECONDS", "3")
    monkeypatch.setenv("VRFDICE_TEST__APPROVAL__POLICY", "exact")
    monkeypatch.setenv("VRFDICE_TEST__CONTRACTS__DICE", DICE.lower())

    cfg = AppConfig.load(write_settings(tmp_path), env_prefix="VRFDICE_TEST__")
    assert cfg.polling.active_interval_seconds == 3.0
    assert cfg.approval.policy == "exact"
    assert cfg.approval.approval_amount(10) == 10
    assert cfg.contracts.dice == DICE.lower()
    keys = {o.key for o in cfg.overrides}
    assert "polling.active_interval_seconds" in keys
    assert "contracts.dice" in keys


def test_missing_file_with_env_only(monkeypatch, tmp_path):
    monkeypatch.setenv("VRFDICE_TEST__NETWORK__RPC_URL", "http://node:8545")
    monkeypatch.setenv("VRFDICE_TEST__NETWORK__CHAIN_ID", "31337")
    monkeypatch.setenv("VRFDICE_TEST__CONTRACTS__DICE", DICE)
    monkeypatch.setenv("VRFDICE_TEST__CONTRACTS__TOKEN", TOKEN)

    cfg = AppConfig.load(str(tmp_path / "absent.toml"), env_prefix="VRFDICE_TEST__")
    assert cfg.network.chain_id == 31337
    assert cfg.loaded_files == []


@pytest.mark.parametrize(
    "data, message",
    [
        ({"network": {"chain_id": 1}}, "rpc_url"),
        ({"network": {"rpc_url": "http://x"}}, "chain_id"),
        ({"contracts": {"dice": "0x1234", "token": TOKEN}}, "contracts.dice"),
        ({"wager": {"min_bet": "0"}}, "min_bet"),
        ({"wager": {"min_bet": "10", "max_bet": "5"}}, "max_bet"),
        ({"transactions": {"gas_multiplier": 0.9}}, "gas_multiplier"),
        ({"approval": {"policy": "unlimited"}}, "approval.policy"),
        ({"polling": {"max_attempts": 0}}, "max_attempts"),
    ],
)
def test_invalid_settings_are_rejected(data, message):
    base = {
        "network": {"rpc_url": "http://localhost:8545", "chain_id": 1},
        "contracts": {"dice": DICE, "token": TOKEN},
    }
    for section, values in data.items():
        if section in ("network",):
            base[section] = values
        else:
            base.setdefault(section, {}).update(values)
    with pytest.raises(ValueError, match=message):
        AppConfig.from_dict(base)


def test_base_unit_conversion():
    cfg = AppConfig.from_dict(
        {
            "network": {"rpc_url": "http://localhost:8545", "chain_id": 1},
            "contracts": {"dice": DICE, "token": TOKEN},
            "wager": {"token_decimals": 6},
        }
    )
    assert cfg.wager.to_base_units(Decimal("1.5")) == 1_500_000
    assert cfg.wager.from_base_units(2_500_000) == Decimal("2.5")


def test_base_unit_conversion_refuses_sub_unit_amounts():
    cfg = AppConfig.from_dict(
        {
            "network": {"rpc_url": "http://localhost:8545", "chain_id": 1},
            "contracts": {"dice": DICE, "token": TOKEN},
            "wager": {"token_decimals": 6},
        }
    )
    assert cfg.wager.to_base_units(Decimal("1.500000000")) == 1_500_000
    with pytest.raises(ValueError, match="more than 6 decimal places"):
        cfg.wager.to_base_units(Decimal("1.0000001"))
