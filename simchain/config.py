"""
Configuration management for the simulated chain.
"""
import json
import os
from dataclasses import dataclass, asdict

from .errors import ValidationError

PER_TRANSACTION = "per-transaction"
BATCHED = "batched"


@dataclass
class ChainConfig:
    """Chain parameters."""
    chain_id: int = 31337
    block_mode: str = PER_TRANSACTION
    block_time: int = 12  # seconds added per sealed block
    genesis_timestamp: int = 1
    genesis_block_number: int = 0
    gas_price: int = 0
    block_gas_limit: int = 30_000_000
    default_gas_limit: int = 10_000_000

    def __post_init__(self):
        if self.block_mode not in (PER_TRANSACTION, BATCHED):
            raise ValidationError(f"unknown block mode {self.block_mode!r}")


@dataclass
class EnvironmentConfig:
    """Request queue and bookkeeping."""
    max_queue_size: int = 0  # 0 = unbounded
    max_snapshots: int = 0  # 0 = unlimited


@dataclass
class MonitoringConfig:
    """Monitoring configuration."""
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 9090


@dataclass
class Config:
    """Main configuration."""
    chain: ChainConfig
    environment: EnvironmentConfig
    monitoring: MonitoringConfig

    @classmethod
    def default(cls) -> 'Config':
        """Create default configuration."""
        return cls(
            chain=ChainConfig(),
            environment=EnvironmentConfig(),
            monitoring=MonitoringConfig()
        )

    @classmethod
    def from_dict(cls, data: dict) -> 'Config':
        return cls(
            chain=ChainConfig(**data.get('chain', {})),
            environment=EnvironmentConfig(**data.get('environment', {})),
            monitoring=MonitoringConfig(**data.get('monitoring', {}))
        )

    @classmethod
    def from_file(cls, path: str) -> 'Config':
        """Load configuration from JSON file."""
        with open(path, 'r') as f:
            data = json.load(f)
        return cls.from_dict(data)

    def to_file(self, path: str):
        """Save configuration to JSON file."""
        os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'chain': asdict(self.chain),
            'environment': asdict(self.environment),
            'monitoring': asdict(self.monitoring)
        }
