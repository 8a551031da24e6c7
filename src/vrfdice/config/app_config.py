import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

import toml
from loguru import logger


MAX_UINT256 = 2**256 - 1
APPROVAL_POLICIES = ("max", "exact")


@dataclass(frozen=True)
class NetworkSettings:
    rpc_url: str
    chain_id: int


@dataclass(frozen=True)
class ContractAddresses:
    dice: str
    token: str


@dataclass(frozen=True)
class WagerLimits:
    min_bet: Decimal = Decimal("1")
    max_bet: Decimal = Decimal("1000")
    min_choice: int = 1
    max_choice: int = 6
    token_decimals: int = 18

    def to_base_units(self, amount: Decimal) -> int:
        """Exact conversion; ValueError when ``amount`` is finer than one base unit."""
        scaled = amount * (Decimal(10) ** self.token_decimals)
        if scaled != scaled.to_integral_value():
            raise ValueError(f"{amount} has more than {self.token_decimals} decimal places")
        return int(scaled)

    def from_base_units(self, amount: int) -> Decimal:
        return Decimal(amount) / (Decimal(10) ** self.token_decimals)


@dataclass(frozen=True)
class PollingSettings:
    active_interval_seconds: float = 5.0
    idle_interval_seconds: float = 30.0
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    history_size: int = 10


@dataclass(frozen=True)
class TransactionSettings:
    timeout_seconds: float = 120.0
    gas_multiplier: float = 1.2
    fallback_gas_limit: int = 500_000
    max_reconcile_age_seconds: float = 600.0


@dataclass(frozen=True)
class ApprovalSettings:
    """``policy="max"`` approves MAX_UINT256 once; ``"exact"`` approves each wager."""

    policy: str = "max"
    freshness_seconds: float = 15.0

    def approval_amount(self, required: int) -> int:
        return MAX_UINT256 if self.policy == "max" else required


@dataclass(frozen=True)
class RecoverySettings:
    threshold_seconds: float = 300.0
    cooldown_seconds: float = 5.0
    check_interval_seconds: float = 1.0
    auto_resolve: bool = True
    resolve_cooldown_seconds: float = 5.0


@dataclass
class OverrideRecord:
    key: str
    source: str
    old: Any
    new: Any


@dataclass
class AppConfig:
    network: NetworkSettings
    contracts: ContractAddresses
    wager: WagerLimits = field(default_factory=WagerLimits)
    polling: PollingSettings = field(default_factory=PollingSettings)
    transactions: TransactionSettings = field(default_factory=TransactionSettings)
    approval: ApprovalSettings = field(default_factory=ApprovalSettings)
    recovery: RecoverySettings = field(default_factory=RecoverySettings)
    overrides: List[OverrideRecord] = field(default_factory=list)
    loaded_files: List[str] = field(default_factory=list)

    @classmethod
    def load(
        cls,
        settings_path: Optional[str],
        env_prefix: str = "VRFDICE__",
    ) -> "AppConfig":
        layers: List[Tuple[Dict[str, Any], str]] = []
        loaded_files: List[str] = []

        if settings_path and os.path.exists(settings_path):
            with open(settings_path, "r", encoding="utf-8") as f:
                layers.append((toml.load(f), os.path.basename(settings_path)))
            loaded_files.append(os.path.basename(settings_path))
        elif settings_path:
            logger.warning(f"CONFIG | settings file not found | path={settings_path}")

        env_overrides = _load_env_overrides(env_prefix)
        if env_overrides:
            layers.append((env_overrides, "env"))

        merged: Dict[str, Any] = {}
        overrides: List[OverrideRecord] = []
        for payload, source in layers:
            _merge_dicts(merged, payload, source, overrides)

        cfg = cls.from_dict(merged)
        cfg.overrides = overrides
        cfg.loaded_files = loaded_files
        cfg.log_summary()
        return cfg

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppConfig":
        cfg = cls(
            network=_build_network(data),
            contracts=_build_contracts(data),
            wager=_build_wager(data),
            polling=_build_polling(data),
            transactions=_build_transactions(data),
            approval=_build_approval(data),
            recovery=_build_recovery(data),
        )
        return cfg

    def log_summary(self) -> None:
        logger.info(f"CONFIG | files={', '.join(self.loaded_files) or '<none>'}")
        for o in self.overrides:
            logger.info(f"CONFIG | override {o.key} from {o.source} (old={o.old} -> new={o.new})")
        logger.info(
            f"CONFIG | chain_id={self.network.chain_id} | dice={self.contracts.dice} | token={self.contracts.token}"
        )
        logger.info(
            f"CONFIG | wager={self.wager.min_bet}..{self.wager.max_bet} | "
            f"choices={self.wager.min_choice}..{self.wager.max_choice} | approval={self.approval.policy}"
        )
        logger.info(
            f"CONFIG | poll active={self.polling.active_interval_seconds}s idle={self.polling.idle_interval_seconds}s | "
            f"tx_timeout={self.transactions.timeout_seconds}s | "
            f"stuck_after={self.recovery.threshold_seconds}s cooldown={self.recovery.cooldown_seconds}s"
        )


def _merge_dicts(dst: Dict[str, Any], src: Dict[str, Any], source: str, overrides: List[OverrideRecord], prefix: str = "") -> None:
    for key, value in src.items():
        full_key = f"{prefix}.{key}" if prefix else key
        if isinstance(value, dict) and isinstance(dst.get(key), dict):
            _merge_dicts(dst[key], value, source, overrides, full_key)
        elif isinstance(value, dict):
            dst[key] = value.copy()
        else:
            if key in dst and dst[key] != value:
                overrides.append(OverrideRecord(full_key, source, dst[key], value))
            dst[key] = value


def _load_env_overrides(prefix: str) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for env_key, env_val in os.environ.items():
        if not env_key.startswith(prefix):
            continue
        path_parts = env_key[len(prefix):].lower().split("__")
        _assign_env_override(overrides, path_parts, env_val)
    return overrides


def _assign_env_override(dst: Dict[str, Any], path_parts: List[str], raw_val: str) -> None:
    cur = dst
    for part in path_parts[:-1]:
        if part not in cur or not isinstance(cur[part], dict):
            cur[part] = {}
        cur = cur[part]
    leaf = path_parts[-1]
    # Addresses stay strings even when they look like hex numbers
    if leaf in ("dice", "token", "rpc_url"):
        cur[leaf] = raw_val.strip()
        return
    cur[leaf] = _coerce_env_value(raw_val)


def _coerce_env_value(val: str) -> Any:
    lowered = val.lower()
    if lowered in {"true", "false"}:
        return lowered == "true"
    try:
        return int(val)
    except ValueError:
        pass
    try:
        return float(val)
    except ValueError:
        pass
    return val


def _build_network(cfg: Dict[str, Any]) -> NetworkSettings:
    section = cfg.get("network", {}) or {}
    rpc_url = str(section.get("rpc_url", "")).strip()
    if not rpc_url:
        raise ValueError("network.rpc_url is required")
    if "chain_id" not in section:
        raise ValueError("network.chain_id is required")
    return NetworkSettings(rpc_url=rpc_url, chain_id=int(section["chain_id"]))


def _build_contracts(cfg: Dict[str, Any]) -> ContractAddresses:
    section = cfg.get("contracts", {}) or {}
    dice = str(section.get("dice", "")).strip()
    token = str(section.get("token", "")).strip()
    for label, value in (("contracts.dice", dice), ("contracts.token", token)):
        if not value:
            raise ValueError(f"{label} is required")
        if not (value.startswith("0x") and len(value) == 42):
            raise ValueError(f"{label} must be a 0x-prefixed 20-byte address, got '{value}'")
    return ContractAddresses(dice=dice, token=token)


def _build_wager(cfg: Dict[str, Any]) -> WagerLimits:
    section = cfg.get("wager", {}) or {}
    min_bet = _to_decimal(section.get("min_bet", "1"), "wager.min_bet")
    max_bet = _to_decimal(section.get("max_bet", "1000"), "wager.max_bet")
    if min_bet <= 0:
        raise ValueError(f"wager.min_bet must be > 0, got {min_bet}")
    if max_bet < min_bet:
        raise ValueError(f"wager.max_bet ({max_bet}) must be >= wager.min_bet ({min_bet})")
    min_choice = int(section.get("min_choice", 1))
    max_choice = int(section.get("max_choice", 6))
    if max_choice < min_choice:
        raise ValueError(f"wager.max_choice ({max_choice}) must be >= wager.min_choice ({min_choice})")
    return WagerLimits(
        min_bet=min_bet,
        max_bet=max_bet,
        min_choice=min_choice,
        max_choice=max_choice,
        token_decimals=int(section.get("token_decimals", 18)),
    )


def _build_polling(cfg: Dict[str, Any]) -> PollingSettings:
    section = cfg.get("polling", {}) or {}
    settings = PollingSettings(
        active_interval_seconds=float(section.get("active_interval_seconds", 5.0)),
        idle_interval_seconds=float(section.get("idle_interval_seconds", 30.0)),
        max_attempts=int(section.get("max_attempts", 3)),
        backoff_base_seconds=float(section.get("backoff_base_seconds", 1.0)),
        history_size=int(section.get("history_size", 10)),
    )
    if settings.max_attempts < 1:
        raise ValueError("polling.max_attempts must be >= 1")
    if settings.active_interval_seconds <= 0 or settings.idle_interval_seconds <= 0:
        raise ValueError("polling intervals must be > 0")
    return settings


def _build_transactions(cfg: Dict[str, Any]) -> TransactionSettings:
    section = cfg.get("transactions", {}) or {}
    settings = TransactionSettings(
        timeout_seconds=float(section.get("timeout_seconds", 120.0)),
        gas_multiplier=float(section.get("gas_multiplier", 1.2)),
        fallback_gas_limit=int(section.get("fallback_gas_limit", 500_000)),
        max_reconcile_age_seconds=float(section.get("max_reconcile_age_seconds", 600.0)),
    )
    if settings.gas_multiplier < 1.0:
        raise ValueError(f"transactions.gas_multiplier must be >= 1.0, got {settings.gas_multiplier}")
    return settings


def _build_approval(cfg: Dict[str, Any]) -> ApprovalSettings:
    section = cfg.get("approval", {}) or {}
    policy = str(section.get("policy", "max")).lower()
    if policy not in APPROVAL_POLICIES:
        raise ValueError(f"approval.policy must be one of {APPROVAL_POLICIES}, got '{policy}'")
    return ApprovalSettings(
        policy=policy,
        freshness_seconds=float(section.get("freshness_seconds", 15.0)),
    )


def _build_recovery(cfg: Dict[str, Any]) -> RecoverySettings:
    section = cfg.get("recovery", {}) or {}
    return RecoverySettings(
        threshold_seconds=float(section.get("threshold_seconds", 300.0)),
        cooldown_seconds=float(section.get("cooldown_seconds", 5.0)),
        check_interval_seconds=float(section.get("check_interval_seconds", 1.0)),
        auto_resolve=bool(section.get("auto_resolve", True)),
        resolve_cooldown_seconds=float(section.get("resolve_cooldown_seconds", 5.0)),
    )


def _to_decimal(value: Any, label: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Invalid decimal value for {label}: {value}") from exc
