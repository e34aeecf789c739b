"""Settings parsing and validation for txchaos.

This module contains:
- Settings / StoreSettings: frozen run configuration
- load_settings(): unified entry point (TOML file + CLI overrides)
- validate_config(): (errors, warnings) for a raw config dict
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import tomllib

from txchaos.latency import StatementLatency, latency_from_config
from txchaos.store import IsolationLevel, LockMode
from txchaos.transaction import BackoffPolicy

logger = logging.getLogger(__name__)

VALID_STORES = ("memory", "postgres")
VALID_LATENCY_DISTRIBUTIONS = ("fixed", "uniform", "lognormal")


# ---------------------------------------------------------------------------
# Configuration error
# ---------------------------------------------------------------------------

class ConfigurationError(Exception):
    """Fatal configuration error(s)."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("\n".join(errors))


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StoreSettings:
    """Which store to test and how to reach (or build) it."""
    kind: str = "memory"
    isolation: IsolationLevel = IsolationLevel.READ_COMMITTED
    dsn: Optional[str] = None

    # In-memory store only
    accounts: int = 100
    groups: int = 10
    initial_balance: Decimal = Decimal("100.00")
    lock_timeout_s: float = 2.0
    statement_latency: Optional[StatementLatency] = None


@dataclass(frozen=True)
class Settings:
    """Complete run configuration. Read-only once built."""
    workload: str

    # Operation mix
    read_write_ratio: float = 0.95
    write_split: float = 0.5

    # Target account selection
    selection: int = 10
    random_selection: bool = False

    # Workload tuning
    repeated_reads: int = 10
    amount: Decimal = Decimal("10.00")
    cas_attempts: int = 10

    # Locking
    lock_mode: LockMode = LockMode.NONE
    optimistic_locking: bool = False

    # Runner
    concurrency: int = 8
    duration_s: Optional[float] = 30.0
    iterations: Optional[int] = None

    # Retry
    max_retries: Optional[int] = 30
    backoff: BackoffPolicy = BackoffPolicy()

    seed: Optional[int] = None
    store: StoreSettings = field(default_factory=StoreSettings)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def load_settings(
    config_path: str | None = None,
    *,
    overrides: dict[str, Any] | None = None,
) -> Settings:
    """Load settings from an optional TOML file plus dotted-key overrides.

    Args:
        config_path: Path to TOML configuration file, or None for defaults.
        overrides: e.g. {"workload.type": "phantom_read", "store.isolation": "rc"}.
            None values are ignored.

    Returns:
        Validated Settings.
    """
    raw: dict = {}
    if config_path is not None:
        with open(config_path, "rb") as f:
            raw = tomllib.load(f)

    raw = apply_overrides(raw, overrides or {})
    return build_settings(raw)


def apply_overrides(raw: dict, overrides: dict[str, Any]) -> dict:
    """Return a copy of raw with dotted-key overrides applied."""
    merged = copy.deepcopy(raw)
    for dotted, value in overrides.items():
        if value is None:
            continue
        *parents, leaf = dotted.split(".")
        section = merged
        for name in parents:
            section = section.setdefault(name, {})
        section[leaf] = value
    return merged


def build_settings(raw: dict) -> Settings:
    """Validate a raw config dict and build Settings from it."""
    errors, warnings = validate_config(raw)
    if errors:
        raise ConfigurationError(errors)
    for warning in warnings:
        logger.warning(warning)

    wl = raw.get("workload", {})
    locking = raw.get("locking", {})
    runner = raw.get("runner", {})

    iterations = runner.get("iterations")
    duration_s = runner.get("duration_s", 30.0)
    if iterations is not None:
        duration_s = None

    return Settings(
        workload=wl["type"],
        read_write_ratio=float(wl.get("read_write_ratio", 0.95)),
        write_split=float(wl.get("write_split", 0.5)),
        selection=int(wl.get("selection", 10)),
        random_selection=bool(wl.get("random_selection", False)),
        repeated_reads=int(wl.get("repeated_reads", 10)),
        amount=Decimal(str(wl.get("amount", "10.00"))),
        cas_attempts=int(wl.get("cas_attempts", 10)),
        lock_mode=LockMode.parse(locking.get("lock_mode", "none")),
        optimistic_locking=bool(locking.get("optimistic", False)),
        concurrency=int(runner.get("concurrency", 8)),
        duration_s=float(duration_s) if duration_s is not None else None,
        iterations=int(iterations) if iterations is not None else None,
        max_retries=_build_max_retries(raw.get("retry", {})),
        backoff=_build_backoff(raw.get("retry", {})),
        seed=wl.get("seed"),
        store=_build_store(raw.get("store", {})),
    )


def _build_max_retries(retry_cfg: dict) -> Optional[int]:
    """Negative max_retries means retry forever."""
    value = int(retry_cfg.get("max_retries", 30))
    return None if value < 0 else value


def _build_backoff(retry_cfg: dict) -> BackoffPolicy:
    cfg = retry_cfg.get("backoff", {})
    return BackoffPolicy(
        enabled=bool(cfg.get("enabled", True)),
        base_ms=float(cfg.get("base_ms", 5.0)),
        multiplier=float(cfg.get("multiplier", 2.0)),
        max_ms=float(cfg.get("max_ms", 1000.0)),
        jitter=float(cfg.get("jitter", 0.1)),
    )


def _build_store(store_cfg: dict) -> StoreSettings:
    return StoreSettings(
        kind=store_cfg.get("kind", "memory"),
        isolation=IsolationLevel.parse(store_cfg.get("isolation", "read_committed")),
        dsn=store_cfg.get("dsn"),
        accounts=int(store_cfg.get("accounts", 100)),
        groups=int(store_cfg.get("groups", 10)),
        initial_balance=Decimal(str(store_cfg.get("initial_balance", "100.00"))),
        lock_timeout_s=float(store_cfg.get("lock_timeout_s", 2.0)),
        statement_latency=latency_from_config(store_cfg.get("statement_latency", {})),
    )


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _parse_enum(parse, value, name: str, errors: list[str]) -> None:
    try:
        parse(value)
    except (ValueError, AttributeError):
        errors.append(f"{name} has unknown value '{value}'")


def validate_config(config: dict) -> tuple[list[str], list[str]]:
    """Validate configuration and return errors/warnings.

    Returns:
        (errors, warnings) where:
        - errors: List of fatal configuration errors
        - warnings: List of non-fatal warnings
    """
    from txchaos.scenarios import WorkloadType

    errors = []
    warnings = []

    # Workload section
    wl = config.get('workload', {})
    wl_type = wl.get('type')
    if wl_type is None:
        errors.append("workload.type is required")
    elif wl_type not in WorkloadType.names():
        errors.append(f"workload.type must be one of {WorkloadType.names()}, got '{wl_type}'")

    ratio = wl.get('read_write_ratio', 0.95)
    if not isinstance(ratio, (int, float)) or not 0.0 <= ratio < 1.0:
        errors.append(f"workload.read_write_ratio must be in [0, 1), got {ratio}")

    split = wl.get('write_split', 0.5)
    if not isinstance(split, (int, float)) or not 0.0 <= split <= 1.0:
        errors.append(f"workload.write_split must be in [0, 1], got {split}")

    selection = wl.get('selection', 10)
    if not isinstance(selection, int) or selection <= 0:
        errors.append(f"workload.selection must be a positive integer, got {selection}")

    repeated = wl.get('repeated_reads', 10)
    if not isinstance(repeated, int) or repeated < 2:
        errors.append(f"workload.repeated_reads must be >= 2, got {repeated}")

    try:
        amount = Decimal(str(wl.get('amount', "10.00")))
        if amount <= 0:
            errors.append(f"workload.amount must be > 0, got {amount}")
    except InvalidOperation:
        errors.append(f"workload.amount is not a decimal: '{wl.get('amount')}'")

    cas_attempts = wl.get('cas_attempts', 10)
    if not isinstance(cas_attempts, int) or cas_attempts < 1:
        errors.append(f"workload.cas_attempts must be >= 1, got {cas_attempts}")

    # Locking
    locking = config.get('locking', {})
    _parse_enum(LockMode.parse, locking.get('lock_mode', 'none'), "locking.lock_mode", errors)

    # Runner
    runner = config.get('runner', {})
    concurrency = runner.get('concurrency', 8)
    if not isinstance(concurrency, int) or concurrency <= 0:
        errors.append(f"runner.concurrency must be a positive integer, got {concurrency}")
    iterations = runner.get('iterations')
    if iterations is not None and (not isinstance(iterations, int) or iterations <= 0):
        errors.append(f"runner.iterations must be a positive integer, got {iterations}")
    duration = runner.get('duration_s', 30.0)
    if iterations is None and (not isinstance(duration, (int, float)) or duration <= 0):
        errors.append(f"runner.duration_s must be > 0, got {duration}")
    if iterations is not None and 'duration_s' in runner:
        warnings.append("runner.iterations is set; runner.duration_s will be ignored")

    # Retry
    retry = config.get('retry', {})
    max_retries = retry.get('max_retries', 30)
    if not isinstance(max_retries, int):
        errors.append(f"retry.max_retries must be an integer, got {max_retries}")
    elif max_retries < 0:
        warnings.append("retry.max_retries < 0: conflicting transactions will be retried forever")
    backoff = retry.get('backoff', {})
    jitter = backoff.get('jitter', 0.1)
    if not isinstance(jitter, (int, float)) or not 0.0 <= jitter <= 1.0:
        errors.append(f"retry.backoff.jitter must be in [0, 1], got {jitter}")
    multiplier = backoff.get('multiplier', 2.0)
    if not isinstance(multiplier, (int, float)) or multiplier < 1.0:
        errors.append(f"retry.backoff.multiplier must be >= 1, got {multiplier}")

    # Store
    store = config.get('store', {})
    kind = store.get('kind', 'memory')
    if kind not in VALID_STORES:
        errors.append(f"store.kind must be one of {list(VALID_STORES)}, got '{kind}'")
    _parse_enum(IsolationLevel.parse, store.get('isolation', 'read_committed'),
                "store.isolation", errors)
    if kind == 'postgres' and not store.get('dsn'):
        errors.append("store.dsn is required when store.kind = 'postgres'")
    if kind == 'memory':
        n_accounts = store.get('accounts', 100)
        n_groups = store.get('groups', 10)
        if not isinstance(n_accounts, int) or n_accounts <= 0:
            errors.append(f"store.accounts must be a positive integer, got {n_accounts}")
        if not isinstance(n_groups, int) or n_groups <= 0:
            errors.append(f"store.groups must be a positive integer, got {n_groups}")
        elif isinstance(n_accounts, int) and n_groups > n_accounts:
            warnings.append(f"store.groups ({n_groups}) > store.accounts ({n_accounts}); some groups will be empty")
        if isinstance(n_accounts, int) and isinstance(selection, int) and selection > n_accounts:
            warnings.append(f"workload.selection ({selection}) > store.accounts ({n_accounts}); all accounts will be targeted")
        latency = store.get('statement_latency', {})
        dist = latency.get('distribution', 'fixed')
        if latency and dist not in VALID_LATENCY_DISTRIBUTIONS:
            errors.append(f"store.statement_latency.distribution must be one of "
                          f"{list(VALID_LATENCY_DISTRIBUTIONS)}, got '{dist}'")
        if not latency and isinstance(concurrency, int) and concurrency > 1:
            warnings.append("store.statement_latency is not set; in-memory transactions "
                            "rarely interleave without it")

    # Combinations that cannot expose anything
    lock_mode = locking.get('lock_mode', 'none')
    if locking.get('optimistic', False) and lock_mode == 'for_update':
        warnings.append("locking.optimistic with lock_mode 'for_update': CAS checks can never fail")

    return errors, warnings
