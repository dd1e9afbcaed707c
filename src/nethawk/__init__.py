"""
================================================================================
NetHawk - Network Intrusion Detection and Prevention
================================================================================

Classifies every captured packet with a Random Forest, names the attack with
heuristic rules and blocks malicious sources for a confidence-scaled time,
never touching whitelisted addresses.

Modules:
---------
packets          : PacketRecord and protocol definitions
features         : Fixed-order feature vectors with a versioned schema
classifier       : Scaler + Random Forest inference with atomic model swap
threats          : Threat events, severity bands and attack-type rules
blocking         : Block controller, duration policy and expiry sweeper
engine           : Ingestion loop, bounded histories and reporting queries
firewall         : iptables collaborator
persistence      : JSONL audit trail
capture          : Scapy live capture and PCAP replay
generator        : Synthetic labelled traffic
model_versioning : Versioned model artifacts
training         : Offline Random Forest training
config           : Dataclass configuration (YAML/JSON)
main             : CLI entry point

Quick Start:
------------
    nethawk train --samples 20000
    nethawk simulate --duration 60
    nethawk pcap --file capture.pcap
    sudo nethawk live --interface eth0 --firewall

================================================================================
"""

from .blocking import BlockController, BlockDecision, BlockEntry, BlockOutcome, DurationPolicy, ExpirySweeper
from .classifier import ClassificationResult, Classifier, Label, ModelHandle
from .config import Config, get_config, load_config
from .engine import IngestionLoop, PacketOutcome, PacketStatus
from .errors import FirewallApplyError, ModelUnavailable, NetHawkError, PersistenceError, SchemaError
from .features import FEATURE_NAMES, FeatureExtractor, FeatureVector
from .packets import PacketRecord, Protocol
from .threats import Severity, ThreatAggregator, ThreatEvent

__version__ = '1.0.0'

__all__ = [
    'BlockController', 'BlockDecision', 'BlockEntry', 'BlockOutcome', 'DurationPolicy',
    'ExpirySweeper', 'ClassificationResult', 'Classifier', 'Label', 'ModelHandle',
    'Config', 'get_config', 'load_config', 'IngestionLoop', 'PacketOutcome', 'PacketStatus',
    'FirewallApplyError', 'ModelUnavailable', 'NetHawkError', 'PersistenceError', 'SchemaError',
    'FEATURE_NAMES', 'FeatureExtractor', 'FeatureVector', 'PacketRecord', 'Protocol',
    'Severity', 'ThreatAggregator', 'ThreatEvent',
]
