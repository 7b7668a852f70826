"""
Reserve pipeline configuration.

Provides:
1. Hierarchical configuration with defaults
2. Environment variable overrides (RESERVEPROOF_* prefix)
3. Config file loading (TOML/JSON/YAML)
4. Validation on startup

Configuration Hierarchy (highest to lowest priority):
1. Environment variables
2. Config file
3. Default values

Example:
    config = ReserveConfig.load("reserve.toml")
    print(config.circuit.batch_size)

    # Override with environment
    # RESERVEPROOF_CIRCUIT_BATCH_SIZE=32
"""

from __future__ import annotations

import json
import logging
import os
import tomllib
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

logger = logging.getLogger(__name__)


# =============================================================================
# Configuration Sections
# =============================================================================

@dataclass
class LedgerConfig:
    """Serial ledger storage."""
    db_path: str = "./data/reserve.db"


@dataclass
class CircuitConfig:
    """Circuit batching and artifact locations."""
    batch_size: int = 20
    circuit_dir: str = "./circuits/reserve_proof"
    circuit_name: str = "reserve_proof"
    batch_dir: str = "./data/batches"
    proofs_dir: str = "./data/proofs"

    def __post_init__(self):
        if self.batch_size <= 0:
            raise ValueError("batch_size must be positive")


@dataclass
class ProverConfig:
    """External prover commands.

    Templates are expanded with ``str.format`` and split with ``shlex``;
    they never pass through a shell.
    """
    witness_command: str = "nargo execute"
    prove_command: str = "bb prove -b {bytecode} -w {witness} -o {output_dir} --write_vk"
    verify_command: str = "bb verify -p {proof} -k {vk}"
    step_timeout_seconds: float = 300.0
    run_timeout_seconds: float = 3600.0


@dataclass
class ChainConfig:
    """Ledger RPC and protocol account."""
    rpc_url: str = "http://127.0.0.1:8899"
    program_id: str = ""
    protocol_state_address: str = ""
    keypair_path: Optional[str] = None
    timeout_seconds: float = 10.0
    max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    unit_scale: int = 1_000_000_000
    auto_mint: bool = False
    audit_dir: str = "./data/audit"


@dataclass
class RateConfig:
    """Reference rate source, spot price sources and self-healing policy."""
    source_url: str = "https://www.goldback.com/gb-proxy.php"
    spot_primary_url: str = (
        "https://api.jup.ag/price/v2?ids=So11111111111111111111111111111111111111112"
    )
    spot_fallback_url: str = (
        "https://api.coingecko.com/api/v3/simple/price?ids=solana&vs_currencies=usd"
    )
    http_timeout_seconds: float = 10.0
    default_rate: float = 9.02
    staleness_minutes: float = 30.0
    retention_hours: float = 48.0
    swing_alert_percent: float = 20.0
    spot_cache_seconds: float = 60.0
    sync_min_drift_percent: float = 1.0
    max_price_change_percent: float = 20.0
    price_sync_enabled: bool = True


@dataclass
class ApiConfig:
    """HTTP API server."""
    host: str = "127.0.0.1"
    port: int = 8080
    api_key: Optional[str] = None
    cors_origins: str = ""  # comma-separated
    max_batch_serials: int = 10_000


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    format: str = "text"  # "json" or "text"
    file: Optional[str] = None
    redact: bool = True


_SECTIONS = {
    "ledger": LedgerConfig,
    "circuit": CircuitConfig,
    "prover": ProverConfig,
    "chain": ChainConfig,
    "rate": RateConfig,
    "api": ApiConfig,
    "logging": LoggingConfig,
}


# =============================================================================
# Main Configuration
# =============================================================================

@dataclass
class ReserveConfig:
    """Combines all configuration sections into a single object."""
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    circuit: CircuitConfig = field(default_factory=CircuitConfig)
    prover: ProverConfig = field(default_factory=ProverConfig)
    chain: ChainConfig = field(default_factory=ChainConfig)
    rate: RateConfig = field(default_factory=RateConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def load(
        cls,
        config_file: Optional[Union[str, Path]] = None,
        env_prefix: str = "RESERVEPROOF",
    ) -> "ReserveConfig":
        """
        Load configuration with hierarchy: env vars > config file > defaults.

        Args:
            config_file: Path to config file (TOML, JSON or YAML)
            env_prefix: Prefix for environment variables
        """
        config_dict: Dict[str, Any] = {}

        if config_file:
            config_dict = cls._load_file(Path(config_file))

        config_dict = cls._apply_env_overrides(config_dict, env_prefix)

        return cls._from_dict(config_dict)

    @classmethod
    def _load_file(cls, path: Path) -> Dict[str, Any]:
        if not path.exists():
            logger.warning(f"Config file not found: {path}")
            return {}

        content = path.read_text()

        if path.suffix == ".json":
            return json.loads(content)
        if path.suffix == ".toml":
            return tomllib.loads(content)
        if path.suffix in {".yaml", ".yml"}:
            parsed = yaml.safe_load(content)
            if isinstance(parsed, dict):
                return parsed
            logger.warning("YAML config must be a mapping at top level")
            return {}

        logger.warning(f"Unknown config file format: {path.suffix}")
        return {}

    @classmethod
    def _apply_env_overrides(cls, config: Dict[str, Any], prefix: str) -> Dict[str, Any]:
        """Apply ``PREFIX_SECTION_FIELD`` overrides for known sections."""
        for key, value in os.environ.items():
            if not key.startswith(f"{prefix}_"):
                continue

            # RESERVEPROOF_CHAIN_RPC_URL -> chain.rpc_url
            parts = key[len(prefix) + 1:].lower().split("_")
            if len(parts) < 2 or parts[0] not in _SECTIONS:
                continue

            section = parts[0]
            field_name = "_".join(parts[1:])
            config.setdefault(section, {})[field_name] = cls._parse_env_value(value)

        return config

    @staticmethod
    def _parse_env_value(value: str) -> Any:
        if value.lower() in ("true", "yes"):
            return True
        if value.lower() in ("false", "no"):
            return False

        try:
            return int(value)
        except ValueError:
            pass

        try:
            return float(value)
        except ValueError:
            pass

        return value

    @staticmethod
    def _coerce(section_cls: type, values: Dict[str, Any]) -> Dict[str, Any]:
        """Drop unknown keys and coerce env-parsed scalars to the declared type."""
        declared = {f.name: f for f in fields(section_cls)}
        out: Dict[str, Any] = {}
        for name, value in values.items():
            if name not in declared:
                logger.warning(f"Ignoring unknown config key {section_cls.__name__}.{name}")
                continue
            default = declared[name].default
            if isinstance(default, bool):
                if isinstance(value, str):
                    value = value.lower() in ("1", "true", "yes")
                else:
                    value = bool(value)
            elif isinstance(default, int) and not isinstance(value, bool):
                value = int(value)
            elif isinstance(default, float):
                value = float(value)
            elif isinstance(default, str) or default is None:
                value = None if value is None else str(value)
            out[name] = value
        return out

    @classmethod
    def _from_dict(cls, config_dict: Dict[str, Any]) -> "ReserveConfig":
        sections = {
            name: section_cls(**cls._coerce(section_cls, config_dict.get(name) or {}))
            for name, section_cls in _SECTIONS.items()
        }
        return cls(**sections)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    def save(self, path: Union[str, Path]) -> None:
        """Save configuration as JSON or YAML (by suffix)."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        if path.suffix in {".yaml", ".yml"}:
            path.write_text(yaml.safe_dump(self.to_dict(), sort_keys=False))
        else:
            path.write_text(self.to_json())

    def validate(self) -> None:
        """Validate cross-field constraints not covered by ``__post_init__``."""
        if self.prover.step_timeout_seconds <= 0:
            raise ValueError("step_timeout_seconds must be positive")
        if self.prover.run_timeout_seconds < self.prover.step_timeout_seconds:
            raise ValueError("run_timeout_seconds must be >= step_timeout_seconds")

        if self.chain.max_retries <= 0:
            raise ValueError("max_retries must be positive")
        if self.chain.unit_scale <= 0:
            raise ValueError("unit_scale must be positive")

        if self.rate.staleness_minutes <= 0:
            raise ValueError("staleness_minutes must be positive")
        if self.rate.retention_hours < 24:
            raise ValueError("retention_hours must cover the 24h change window")
        if self.rate.default_rate <= 0:
            raise ValueError("default_rate must be positive")

        if not (0 < self.api.port < 65536):
            raise ValueError(f"Invalid api port: {self.api.port}")

        if self.logging.level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid logging level: {self.logging.level}")
        if self.logging.format not in ("json", "text"):
            raise ValueError(f"Invalid logging format: {self.logging.format}")


# =============================================================================
# Global Config Instance
# =============================================================================

_global_config: Optional[ReserveConfig] = None


def get_config() -> ReserveConfig:
    """Get global configuration instance."""
    global _global_config
    if _global_config is None:
        _global_config = ReserveConfig.load()
    return _global_config


def set_config(config: ReserveConfig) -> None:
    global _global_config
    _global_config = config


def reset_config() -> None:
    """Reset global configuration (forces reload)."""
    global _global_config
    _global_config = None
