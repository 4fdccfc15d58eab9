import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from fractions import Fraction
from typing import Mapping, Optional

from dotenv import load_dotenv

from .amounts import Amount
from .errors import ConfigError, PolicyViolation
from .models import (
    ExactFee,
    FeePolicy,
    FixedBuffer,
    LeftoverCappedAt,
    NoTip,
    ProportionalBuffer,
    TipPolicy,
    TransferMode,
)


class TriggerMode(Enum):
    BLOCK = "block"
    INTERVAL = "interval"


@dataclass(frozen=True)
class SweeperConfig:
    ws_endpoint: str
    source_seed: str = field(repr=False)
    target_address: str
    ss58_format: int = 42
    type_registry_preset: Optional[str] = None
    transfer_mode: TransferMode = TransferMode.DRAIN_ACCOUNT
    fee_policy: FeePolicy = field(default_factory=lambda: ProportionalBuffer(Fraction(11, 10)))
    tip_policy: TipPolicy = field(default_factory=NoTip)
    min_drain: Optional[Amount] = None
    trigger_mode: TriggerMode = TriggerMode.INTERVAL
    interval_seconds: float = 1.0
    max_status_updates: int = 32
    wait_for_finalization: bool = True
    status_timeout: float = 60.0
    block_feed_timeout: float = 60.0
    exit_on_success: bool = False
    log_level: str = "INFO"


def _get(env: Mapping[str, str], name: str) -> Optional[str]:
    raw = env.get(name)
    if raw is None or not str(raw).strip():
        return None
    return str(raw).strip()


def _env_bool(env, name: str, default: bool) -> bool:
    raw = _get(env, name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "y", "on"}


def _env_int(env, name: str, default: int, min_value: Optional[int] = None) -> int:
    raw = _get(env, name)
    try:
        value = default if raw is None else int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None
    if min_value is not None and value < min_value:
        raise ConfigError(f"{name} must be >= {min_value}, got {value}")
    return value


def _env_float(env, name: str, default: float, min_value: Optional[float] = None) -> float:
    raw = _get(env, name)
    try:
        value = default if raw is None else float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None
    if min_value is not None and value < min_value:
        raise ConfigError(f"{name} must be >= {min_value}, got {value}")
    return value


def _env_amount(env, name: str) -> Optional[Amount]:
    raw = _get(env, name)
    if raw is None:
        return None
    try:
        return Amount(raw)
    except (ValueError, PolicyViolation):
        raise ConfigError(f"{name} must be a non-negative integer in base units, got {raw!r}") from None


def _env_choice(env, name: str, enum_cls, default):
    raw = _get(env, name)
    if raw is None:
        return default
    try:
        return enum_cls(raw.lower())
    except ValueError:
        choices = ", ".join(m.value for m in enum_cls)
        raise ConfigError(f"{name} must be one of: {choices}; got {raw!r}") from None


def _fee_policy(env) -> FeePolicy:
    name = (_get(env, "FEE_POLICY") or "proportional").lower()
    if name == "fixed":
        buffer = _env_amount(env, "FEE_BUFFER")
        if buffer is None:
            raise ConfigError("FEE_POLICY=fixed requires FEE_BUFFER")
        return FixedBuffer(buffer)
    if name == "proportional":
        raw = _get(env, "FEE_RATIO") or "1.1"
        try:
            return ProportionalBuffer(Fraction(raw))
        except (ValueError, ZeroDivisionError):
            raise ConfigError(f"FEE_RATIO must be a decimal number, got {raw!r}") from None
        except PolicyViolation as e:
            raise ConfigError(str(e)) from None
    if name == "exact":
        return ExactFee()
    raise ConfigError(f"FEE_POLICY must be one of: fixed, proportional, exact; got {name!r}")


def _tip_policy(env) -> TipPolicy:
    cap = _env_amount(env, "TIP_CAP")
    if not cap:
        return NoTip()
    return LeftoverCappedAt(cap)


def load_config(environ: Optional[Mapping[str, str]] = None, load_env_file: bool = True) -> SweeperConfig:
    """Reads the sweeper configuration from the environment (and .env)."""
    if load_env_file:
        load_dotenv()
    env = os.environ if environ is None else environ

    required = {name: _get(env, name) for name in ("WS_ENDPOINT", "SOURCE_SEED", "TARGET_ADDRESS")}
    missing = [name for name, value in required.items() if value is None]
    if missing:
        raise ConfigError(f"Missing required environment variables: {', '.join(missing)}")

    transfer_mode = _env_choice(env, "TRANSFER_MODE", TransferMode, TransferMode.DRAIN_ACCOUNT)
    fee_policy = _fee_policy(env)
    if isinstance(fee_policy, ExactFee) and transfer_mode is TransferMode.DRAIN_ACCOUNT:
        logging.warning("FEE_POLICY=exact has no safety margin; it is intended for keep_alive transfers")

    return SweeperConfig(
        ws_endpoint=required["WS_ENDPOINT"],
        source_seed=required["SOURCE_SEED"],
        target_address=required["TARGET_ADDRESS"],
        ss58_format=_env_int(env, "SS58_FORMAT", 42, min_value=0),
        type_registry_preset=_get(env, "TYPE_REGISTRY_PRESET"),
        transfer_mode=transfer_mode,
        fee_policy=fee_policy,
        tip_policy=_tip_policy(env),
        min_drain=_env_amount(env, "MIN_DRAIN_AMOUNT"),
        trigger_mode=_env_choice(env, "TRIGGER_MODE", TriggerMode, TriggerMode.INTERVAL),
        interval_seconds=_env_float(env, "SWEEP_INTERVAL_SECONDS", 1.0, min_value=0.1),
        max_status_updates=_env_int(env, "MAX_STATUS_UPDATES", 32, min_value=1),
        wait_for_finalization=_env_bool(env, "WAIT_FOR_FINALIZATION", True),
        status_timeout=_env_float(env, "STATUS_TIMEOUT_SECONDS", 60.0, min_value=1.0),
        block_feed_timeout=_env_float(env, "BLOCK_FEED_TIMEOUT_SECONDS", 60.0, min_value=1.0),
        exit_on_success=_env_bool(env, "EXIT_ON_SUCCESS", False),
        log_level=(_get(env, "LOG_LEVEL") or "INFO").upper(),
    )
