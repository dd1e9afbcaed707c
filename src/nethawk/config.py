"""
================================================================================
NetHawk - Configuration Module
================================================================================

Centralized configuration for the whole NIDPS.
Every tunable of the detection pipeline and of the block controller has a
default here; a configuration file only needs to name what it changes.

Usage:
    from nethawk.config import Config, get_config

    # Default config
    config = get_config()

    # From file (missing sections and keys fall back to defaults)
    config = Config.from_yaml('config.yaml')

================================================================================
"""

import json
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .utils import get_logger, get_project_root

logger = get_logger(__name__)


PROJECT_ROOT = get_project_root()


# ==============================================================================
# PATHS
# ==============================================================================

@dataclass
class PathConfig:
    """Path configuration with sensible defaults."""

    project_root: Path = field(default_factory=lambda: PROJECT_ROOT)

    # Versioned (scaler, model) artifacts
    models_dir: Path = field(default_factory=lambda: PROJECT_ROOT / 'models')

    # Audit JSONL files and application logs
    logs_dir: Path = field(default_factory=lambda: PROJECT_ROOT / 'logs')

    def __post_init__(self):
        """Convert strings to Path objects if needed."""
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, str):
                setattr(self, f.name, Path(value))

    def ensure_dirs(self):
        """Create directories if they don't exist."""
        for name in ['models_dir', 'logs_dir']:
            getattr(self, name).mkdir(parents=True, exist_ok=True)


# ==============================================================================
# MODEL
# ==============================================================================

@dataclass
class ModelConfig:
    """Model selection and classification threshold."""

    # Version folder under models_dir, 'latest' or 'best'
    model_version: str = 'latest'

    # Malicious probability at or above which a packet is malicious
    confidence_threshold: float = 0.7

    # Training parameters for the offline 'train' command
    n_estimators: int = 100
    max_depth: Optional[int] = None
    training_samples: int = 20000


# ==============================================================================
# CAPTURE
# ==============================================================================

@dataclass
class CaptureConfig:
    """Packet source and ingestion settings."""

    # Live capture
    interface: str = 'eth0'
    bpf_filter: str = 'ip'
    promiscuous: bool = True

    # PCAP replay
    pcap_path: Optional[str] = None

    # Synthetic generator
    packets_per_second: float = 50.0
    malicious_rate: float = 0.12

    # Ingestion queue between capture and workers
    queue_size: int = 10000
    workers: int = 1


# ==============================================================================
# DETECTION RULES
# ==============================================================================

@dataclass
class DetectionConfig:
    """Heuristic rule sets used to label threats."""

    known_malicious_ips: List[str] = field(default_factory=lambda: [
        '185.220.101.42', '198.98.51.189', '45.142.214.123', '91.240.118.172',
        '103.253.145.12', '194.147.78.45', '23.129.64.218', '89.248.165.91',
        '46.166.139.111', '178.128.83.165', '159.203.176.62', '134.209.24.42',
    ])
    botnet_ips: List[str] = field(default_factory=lambda: [
        '185.220.101.42', '198.98.51.189', '45.142.214.123',
    ])
    scanner_ips: List[str] = field(default_factory=lambda: [
        '91.240.118.172', '103.253.145.12', '194.147.78.45',
    ])
    c2_ips: List[str] = field(default_factory=lambda: [
        '23.129.64.218', '89.248.165.91', '46.166.139.111',
    ])

    suspicious_ports: List[int] = field(default_factory=lambda: [
        1337, 31337, 12345, 54321, 9999, 6666, 4444, 1234, 2222, 4321, 8888,
    ])
    scanned_ports: List[int] = field(default_factory=lambda: [
        21, 22, 23, 25, 53, 80, 110, 135, 139, 143, 443, 993, 995, 1433, 3389,
    ])

    # Addresses treated as internal besides RFC1918/loopback
    internal_networks: List[str] = field(default_factory=list)

    large_packet_size: int = 1400
    small_packet_size: int = 40
    min_ttl: int = 32
    large_icmp_size: int = 100
    high_port: int = 49152
    privileged_port: int = 1024


# ==============================================================================
# BLOCKING
# ==============================================================================

@dataclass
class BlockingConfig:
    """Block controller, expiry sweep and firewall settings."""

    # Confidence that must be exceeded before a source is blocked
    block_threshold: float = 0.7

    # (minimum confidence, minutes) tiers, first match wins
    duration_tiers: List[Tuple[float, float]] = field(default_factory=lambda: [
        (0.9, 15.0),
        (0.0, 10.0),
    ])

    # What a detection on an already blocked address does: 'ignore' or 'extend'
    repeat_offense_policy: str = 'ignore'

    # Addresses that can never be blocked
    whitelist: List[str] = field(default_factory=lambda: ['127.0.0.1'])

    # Seconds between expiry sweeps
    sweep_interval: float = 30.0

    # Firewall collaborator
    firewall_enabled: bool = False
    firewall_dry_run: bool = True
    firewall_chain: str = 'INPUT'
    firewall_max_attempts: int = 3
    firewall_backoff: float = 0.5

    def __post_init__(self):
        # YAML/JSON give lists of lists
        self.duration_tiers = [tuple(t) for t in self.duration_tiers]
        if self.repeat_offense_policy not in ('ignore', 'extend'):
            raise ValueError(
                f"repeat_offense_policy must be 'ignore' or 'extend', "
                f"got {self.repeat_offense_policy!r}"
            )


# ==============================================================================
# HISTORY
# ==============================================================================

@dataclass
class HistoryConfig:
    """Capacities of the bounded in-memory histories."""

    packets: int = 1000
    threats: int = 100
    system_events: int = 100

    # Append packets/threats/blocks/events to JSONL audit files
    persist: bool = True
    persist_packets: bool = True


# ==============================================================================
# MAIN CONFIG CLASS
# ==============================================================================

_SECTIONS = {
    'paths': PathConfig,
    'model': ModelConfig,
    'capture': CaptureConfig,
    'detection': DetectionConfig,
    'blocking': BlockingConfig,
    'history': HistoryConfig,
}


def _build_section(name: str, data: Optional[Dict[str, Any]]):
    """Instantiate a section, ignoring unknown keys."""
    cls = _SECTIONS[name]
    data = data or {}
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        logger.warning(f"Ignoring unknown '{name}' settings: {sorted(unknown)}")
    return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class Config:
    """
    Main configuration class that combines all settings.

    Usage:
        config = Config()  # Default config

        config = Config(
            blocking=BlockingConfig(whitelist=['10.0.0.1']),
            capture=CaptureConfig(interface='wlan0', workers=2)
        )
    """

    paths: PathConfig = field(default_factory=PathConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    blocking: BlockingConfig = field(default_factory=BlockingConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'Config':
        """Build a config from a (possibly partial) dictionary."""
        data = data or {}
        unknown = set(data) - set(_SECTIONS)
        if unknown:
            logger.warning(f"Ignoring unknown config sections: {sorted(unknown)}")
        return cls(**{name: _build_section(name, data.get(name)) for name in _SECTIONS})

    @classmethod
    def from_yaml(cls, yaml_path: str) -> 'Config':
        """Load configuration from YAML file."""
        with open(yaml_path, 'r') as f:
            data = yaml.safe_load(f)
        return cls.from_dict(data)

    @classmethod
    def from_json(cls, json_path: str) -> 'Config':
        """Load configuration from JSON file."""
        with open(json_path, 'r') as f:
            data = json.load(f)
        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary."""
        result = {}
        for name in _SECTIONS:
            section = getattr(self, name)
            values = {}
            for f in fields(section):
                value = getattr(section, f.name)
                if isinstance(value, Path):
                    value = str(value)
                elif f.name == 'duration_tiers':
                    value = [list(t) for t in value]
                values[f.name] = value
            result[name] = values
        return result

    def save_yaml(self, path: str):
        """Save configuration to YAML file."""
        with open(path, 'w') as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False)

    def save_json(self, path: str):
        """Save configuration to JSON file."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)


# ==============================================================================
# GLOBAL CONFIG INSTANCE
# ==============================================================================

_global_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _global_config
    if _global_config is None:
        _global_config = Config()
    return _global_config


def set_config(config: Config):
    """Set the global configuration instance."""
    global _global_config
    _global_config = config


def load_config(path: str) -> Config:
    """Load configuration from file and set as global."""
    if path.endswith('.yaml') or path.endswith('.yml'):
        config = Config.from_yaml(path)
    elif path.endswith('.json'):
        config = Config.from_json(path)
    else:
        raise ValueError(f"Unknown config format: {path}")

    set_config(config)
    return config


def print_config_summary(config: Optional[Config] = None):
    """Print a summary of the current configuration."""
    config = config or get_config()

    print("\n" + "=" * 60)
    print("NetHawk Configuration Summary")
    print("=" * 60)

    print("\nPaths:")
    print(f"   Project root: {config.paths.project_root}")
    print(f"   Models:       {config.paths.models_dir}")
    print(f"   Logs:         {config.paths.logs_dir}")

    print("\nModel:")
    print(f"   Version:      {config.model.model_version}")
    print(f"   Threshold:    {config.model.confidence_threshold}")

    print("\nCapture:")
    print(f"   Interface:    {config.capture.interface}")
    print(f"   Filter:       {config.capture.bpf_filter}")
    print(f"   Workers:      {config.capture.workers}")

    print("\nBlocking:")
    print(f"   Threshold:    {config.blocking.block_threshold}")
    tiers = ', '.join(f">{c:g}: {m:g}min" for c, m in config.blocking.duration_tiers)
    print(f"   Durations:    {tiers}")
    print(f"   Repeat:       {config.blocking.repeat_offense_policy}")
    print(f"   Whitelist:    {', '.join(config.blocking.whitelist) or '-'}")
    print(f"   Sweep every:  {config.blocking.sweep_interval:g}s")
    firewall = 'Disabled'
    if config.blocking.firewall_enabled:
        firewall = 'Dry-run' if config.blocking.firewall_dry_run else 'Enabled'
    print(f"   Firewall:     {firewall}")

    print("\n" + "=" * 60)
