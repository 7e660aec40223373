"""
Configuration management and loading.

Handles relayer, storage and rate card settings.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict

import yaml

from edgecharge.core.pricing import DEFAULT_RATE_TABLE, BillingType, RateCard, RateTable
from edgecharge.storage.db import DEFAULT_DB_PATH


@dataclass(frozen=True)
class RelayerConfig:
    """Batching and submission settings for the relayer."""
    batch_interval_seconds: float = 60.0
    max_submit_attempts: int = 3
    retry_backoff_seconds: float = 1.0
    audit_log_size: int = 100

    def __post_init__(self):
        """Validate intervals and counts are positive."""
        if self.batch_interval_seconds <= 0:
            raise ValueError("batch_interval_seconds must be > 0")
        if self.max_submit_attempts < 1:
            raise ValueError("max_submit_attempts must be >= 1")
        if self.retry_backoff_seconds < 0:
            raise ValueError("retry_backoff_seconds must be >= 0")
        if self.audit_log_size < 1:
            raise ValueError("audit_log_size must be >= 1")


@dataclass(frozen=True)
class StorageConfig:
    """Where the ledger and audit trail live."""
    db_path: str = DEFAULT_DB_PATH

    def __post_init__(self):
        if not self.db_path:
            raise ValueError("db_path must not be empty")


@dataclass(frozen=True)
class EdgeChargeSettings:
    """Complete EdgeCharge configuration."""
    relayer: RelayerConfig = field(default_factory=RelayerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    rate_table: RateTable = DEFAULT_RATE_TABLE


def default_settings() -> EdgeChargeSettings:
    """Built-in settings used when no config file is given."""
    return EdgeChargeSettings()


_RELAYER_KEYS = {
    'batch_interval_seconds': float,
    'max_submit_attempts': int,
    'retry_backoff_seconds': float,
    'audit_log_size': int,
}
_STORAGE_KEYS = {'db_path'}
_RATE_CARD_KEYS = {
    'rate_id', 'name', 'unit_price', 'billing_type',
    'minimum_charge', 'maximum_charge', 'currency', 'active',
}


def load_settings(path: str) -> EdgeChargeSettings:
    """Load and validate EdgeCharge configuration from YAML file.

    Every section is optional and falls back to defaults, but unknown keys
    are rejected so a typo never silently reverts to a default.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated EdgeChargeSettings object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"EdgeCharge config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'relayer', 'storage', 'rate_cards'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    relayer = _parse_relayer_config(raw_config.get('relayer', {}))
    storage = _parse_storage_config(raw_config.get('storage', {}))

    if 'rate_cards' in raw_config:
        cards_data = raw_config['rate_cards']
        if not isinstance(cards_data, list) or not cards_data:
            raise ValueError("'rate_cards' must be a non-empty list")
        rate_table = RateTable.from_cards(
            _parse_rate_card(card, f"rate_cards[{i}]") for i, card in enumerate(cards_data)
        )
    else:
        rate_table = DEFAULT_RATE_TABLE

    return EdgeChargeSettings(relayer=relayer, storage=storage, rate_table=rate_table)


def _parse_relayer_config(data: Any) -> RelayerConfig:
    if not isinstance(data, dict):
        raise ValueError("'relayer' must be a dictionary")

    unknown_keys = set(data.keys()) - set(_RELAYER_KEYS)
    if unknown_keys:
        raise ValueError(f"Unknown relayer keys: {unknown_keys}")

    values: Dict[str, Any] = {}
    for key, kind in _RELAYER_KEYS.items():
        if key not in data:
            continue
        value = data[key]
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"'{key}' in relayer must be a number")
        if kind is int and not isinstance(value, int):
            raise ValueError(f"'{key}' in relayer must be an integer")
        values[key] = kind(value)

    return RelayerConfig(**values)


def _parse_storage_config(data: Any) -> StorageConfig:
    if not isinstance(data, dict):
        raise ValueError("'storage' must be a dictionary")

    unknown_keys = set(data.keys()) - _STORAGE_KEYS
    if unknown_keys:
        raise ValueError(f"Unknown storage keys: {unknown_keys}")

    if 'db_path' in data:
        if not isinstance(data['db_path'], str):
            raise ValueError("'db_path' in storage must be a string")
        return StorageConfig(db_path=data['db_path'])
    return StorageConfig()


def _parse_rate_card(data: Any, path: str) -> RateCard:
    """Parse and validate one rate card.

    Prices are read through Decimal from their string form, so quote them in
    YAML to keep them exact.

    Args:
        data: Rate card data
        path: Path for error messages

    Returns:
        Validated RateCard

    Raises:
        ValueError: If the rate card is invalid
    """
    if not isinstance(data, dict):
        raise ValueError(f"{path} must be a dictionary")

    unknown_keys = set(data.keys()) - _RATE_CARD_KEYS
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    for required in ('rate_id', 'name', 'unit_price'):
        if required not in data:
            raise ValueError(f"Missing required '{required}' in {path}")

    billing_str = data.get('billing_type', BillingType.PER_UNIT.value)
    try:
        billing_type = BillingType(str(billing_str).lower())
    except ValueError:
        valid_types = [b.value for b in BillingType]
        raise ValueError(f"'billing_type' in {path} must be one of: {valid_types}")

    maximum = data.get('maximum_charge')
    return RateCard(
        rate_id=str(data['rate_id']),
        name=str(data['name']),
        unit_price=_decimal(data['unit_price'], 'unit_price', path),
        billing_type=billing_type,
        minimum_charge=_decimal(data.get('minimum_charge', 0), 'minimum_charge', path),
        maximum_charge=None if maximum is None else _decimal(maximum, 'maximum_charge', path),
        currency=str(data.get('currency', 'USD')),
        active=bool(data.get('active', True)),
    )


def _decimal(value: Any, key: str, path: str) -> Decimal:
    if isinstance(value, bool):
        raise ValueError(f"'{key}' in {path} must be a number")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{key}' in {path} must be a number")
