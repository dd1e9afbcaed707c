#!/usr/bin/env python3
"""
================================================================================
NetHawk - Main Entry Point
================================================================================

Unified CLI for training, model management and monitoring.

Usage:
    nethawk <command> [options]
    python -m nethawk.main <command> [options]

Commands:
    config      Show/save configuration
    train       Train a new classifier version
    models      List, select or clean up model versions
    simulate    Monitor synthetic traffic
    pcap        Replay a PCAP file through the detection pipeline
    live        Start live packet capture

Examples:
    # Show current configuration
    nethawk config --show

    # Train on synthetic traffic and serve the result
    nethawk train --samples 20000

    # Two minutes of synthetic traffic
    nethawk simulate --duration 120 --rate 100

    # Analyze a PCAP
    nethawk pcap --file capture.pcap -o report.json

    # Live capture with real iptables rules
    sudo nethawk live --interface eth0 --firewall --firewall-execute

================================================================================
"""

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Optional

from .config import (Config, get_config, load_config, print_config_summary, set_config)
from .utils import LOG_DATEFMT, configure_logging, suppress_warnings


def setup_logging(verbose: bool = False, log_file: Optional[str] = None):
    """Configure logging for third-party libraries and the nethawk loggers."""
    level = logging.DEBUG if verbose else logging.INFO

    handlers = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format='%(asctime)s | %(levelname)s | %(name)s | %(message)s',
        datefmt=LOG_DATEFMT,
        handlers=handlers
    )
    configure_logging(level, log_file)


def create_config_from_args(args) -> Config:
    """Apply command line overrides to the global config."""
    config = get_config()

    if getattr(args, 'model_version', None):
        config.model.model_version = args.model_version
    if getattr(args, 'confidence', None) is not None:
        config.model.confidence_threshold = args.confidence
    if getattr(args, 'block_threshold', None) is not None:
        config.blocking.block_threshold = args.block_threshold
    if getattr(args, 'whitelist', None):
        config.blocking.whitelist = list(config.blocking.whitelist) + args.whitelist
    if getattr(args, 'repeat_policy', None):
        config.blocking.repeat_offense_policy = args.repeat_policy

    if getattr(args, 'models_dir', None):
        config.paths.models_dir = Path(args.models_dir)
    if getattr(args, 'log_dir', None):
        config.paths.logs_dir = Path(args.log_dir)

    if getattr(args, 'interface', None):
        config.capture.interface = args.interface
    if getattr(args, 'filter', None):
        config.capture.bpf_filter = args.filter
    if getattr(args, 'no_promisc', False):
        config.capture.promiscuous = False
    if getattr(args, 'workers', None):
        config.capture.workers = args.workers
    if getattr(args, 'firewall', False):
        config.blocking.firewall_enabled = True
    if getattr(args, 'firewall_execute', False):
        config.blocking.firewall_dry_run = False

    set_config(config)
    return config


def build_engine(config: Config):
    """Classifier, firewall, audit logger and ingestion loop from a config."""
    from .classifier import Classifier
    from .engine import IngestionLoop
    from .firewall import FirewallManager
    from .persistence import AuditLogger

    classifier = Classifier.from_directory(
        config.paths.models_dir,
        version=config.model.model_version,
        threshold=config.model.confidence_threshold,
    )
    firewall = FirewallManager(
        enabled=config.blocking.firewall_enabled,
        dry_run=config.blocking.firewall_dry_run,
        chain=config.blocking.firewall_chain,
    )
    audit = None
    if config.history.persist:
        audit = AuditLogger(config.paths.logs_dir,
                            persist_packets=config.history.persist_packets)

    engine = IngestionLoop.from_config(config, classifier, firewall=firewall, audit=audit)
    return engine, firewall, audit


def finish_session(engine, audit, args):
    """Summary, optional JSON report, cleanup."""
    engine.print_summary()

    if not getattr(args, 'keep_blocks', False) and engine.controller.firewall.enabled:
        removed = engine.controller.unblock_all()
        if removed:
            print(f"Removed {removed} firewall rule(s) on shutdown")

    if getattr(args, 'output', None):
        report = {
            'stats': engine.stats(),
            'active_blocks': [b.to_dict() for b in engine.active_blocks()],
            'recent_threats': [t.to_dict() for t in engine.recent_threats()],
            'system_events': [e.to_dict() for e in engine.system_events()],
        }
        with open(args.output, 'w') as f:
            json.dump(report, f, indent=2, default=str)
        print(f"\nReport saved to: {args.output}")

    if audit is not None:
        audit.close()


def print_header(title: str, config: Config, engine, **extra):
    print("=" * 60)
    print(f"NetHawk {title}")
    print("=" * 60)
    print(f"Model:     {engine.classifier.version or 'UNAVAILABLE (packets stored as unknown)'}")
    print(f"Threshold: {config.model.confidence_threshold} / block > {config.blocking.block_threshold}")
    print(f"Firewall:  {engine.controller.firewall.describe()}")
    for key, value in extra.items():
        print(f"{key.capitalize() + ':':<10} {value}")
    print("=" * 60)


# ==============================================================================
# COMMAND: CONFIG
# ==============================================================================

def cmd_config(args):
    """Show or save configuration."""
    config = create_config_from_args(args)

    if args.show or not args.save:
        print_config_summary(config)

    if args.save:
        if args.save.endswith('.json'):
            config.save_json(args.save)
        else:
            config.save_yaml(args.save)
        print(f"\nConfiguration saved to: {args.save}")


# ==============================================================================
# COMMAND: TRAIN
# ==============================================================================

def cmd_train(args):
    """Train and store a new model version."""
    from .training.random_forest import run_training

    config = create_config_from_args(args)
    config.paths.ensure_dirs()

    version_dir, results = run_training(
        models_dir=config.paths.models_dir,
        data_path=args.data,
        n_samples=args.samples or config.model.training_samples,
        n_estimators=args.n_estimators or config.model.n_estimators,
        max_depth=args.max_depth if args.max_depth is not None else config.model.max_depth,
        malicious_rate=config.capture.malicious_rate,
        n_jobs=args.n_jobs,
        keep=args.keep,
    )

    metrics = results['validation_metrics']
    print(f"\nNew version: {version_dir.name}")
    print(f"  F1: {metrics['f1']:.4f} | Recall: {metrics['recall']:.4f} | "
          f"FPR: {metrics['false_positive_rate']:.4f}")


# ==============================================================================
# COMMAND: MODELS
# ==============================================================================

def cmd_models(args):
    """List, select or clean up model versions."""
    from .model_versioning import (cleanup_old_versions, print_versions_summary,
                                   set_latest_version)

    config = create_config_from_args(args)
    models_dir = config.paths.models_dir

    if args.set_latest:
        set_latest_version(models_dir, args.set_latest)
    if args.cleanup:
        removed = cleanup_old_versions(models_dir, keep_n=args.cleanup)
        print(f"Removed {len(removed)} old version(s)")

    print_versions_summary(models_dir)


# ==============================================================================
# COMMAND: SIMULATE / PCAP / LIVE
# ==============================================================================

def cmd_simulate(args):
    """Monitor synthetic traffic."""
    from .generator import SyntheticTrafficGenerator

    config = create_config_from_args(args)
    engine, firewall, audit = build_engine(config)

    rate = args.rate or config.capture.packets_per_second
    generator = SyntheticTrafficGenerator(
        malicious_rate=args.malicious_rate if args.malicious_rate is not None
        else config.capture.malicious_rate,
        detection=config.detection,
        time_of_day=args.time_of_day,
        seed=args.seed,
    )

    print_header('Simulation', config, engine, rate=f"{rate:g} pkt/s",
                 duration=f"{args.duration}s" if args.duration else 'until Ctrl+C')

    stop_event = threading.Event()
    _install_signal_handlers(stop_event, engine)

    stream = generator.stream(packets_per_second=rate, duration=args.duration,
                              max_packets=args.packets, stop_event=stop_event)
    engine.run(stream, workers=config.capture.workers)
    finish_session(engine, audit, args)


def cmd_pcap(args):
    """Replay a PCAP file."""
    from .capture import PcapSource

    config = create_config_from_args(args)
    pcap_path = args.file or config.capture.pcap_path
    if not pcap_path:
        print("Error: Specify --file or capture.pcap_path")
        sys.exit(1)
    if not Path(pcap_path).exists():
        print(f"Error: PCAP file not found: {pcap_path}")
        sys.exit(1)

    engine, firewall, audit = build_engine(config)
    print_header('PCAP Analysis', config, engine, file=pcap_path,
                 limit=f"{args.max_packets:,} packets" if args.max_packets else 'none')

    stop_event = threading.Event()
    _install_signal_handlers(stop_event, engine)

    engine.run(PcapSource(pcap_path, max_packets=args.max_packets),
               workers=config.capture.workers)
    finish_session(engine, audit, args)


def cmd_live(args):
    """Live capture."""
    from .capture import LiveCapture

    config = create_config_from_args(args)
    engine, firewall, audit = build_engine(config)

    print_header('Live Capture', config, engine, interface=config.capture.interface,
                 filter=config.capture.bpf_filter,
                 duration=f"{args.duration}s" if args.duration else 'until Ctrl+C')

    stop_event = threading.Event()
    _install_signal_handlers(stop_event, engine)

    capture = LiveCapture(config.capture.interface, config.capture.bpf_filter,
                          config.capture.promiscuous)
    engine.start(workers=config.capture.workers)
    try:
        capture.run(engine.submit, duration=args.duration, stop_event=stop_event)
    finally:
        engine.stop()
    finish_session(engine, audit, args)


def _install_signal_handlers(stop_event: threading.Event, engine):
    def signal_handler(sig, frame):
        logging.getLogger('nethawk.main').info("Shutdown signal received...")
        stop_event.set()
        engine.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


# ==============================================================================
# MAIN
# ==============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='nethawk',
        description='NetHawk - ML network intrusion detection and prevention',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__.split('Examples:')[1].split('=' * 80)[0] if __doc__ else None
    )

    parser.add_argument('-c', '--config-file', help='YAML/JSON configuration file')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug output')
    parser.add_argument('--log-file', help='Also write logs to this file')

    model_group = parser.add_argument_group('Model Selection')
    model_group.add_argument('--model-version',
                             help='Model version (folder name, "latest" or "best")')
    model_group.add_argument('--confidence', type=float,
                             help='Malicious threshold (0-1)')

    block_group = parser.add_argument_group('Blocking')
    block_group.add_argument('--block-threshold', type=float,
                             help='Confidence a threat must exceed to be blocked')
    block_group.add_argument('--whitelist', action='append', metavar='ADDRESS',
                             help='Never block this address or network (repeatable)')
    block_group.add_argument('--repeat-policy', choices=['ignore', 'extend'],
                             help='Repeat detections on a blocked address')

    path_group = parser.add_argument_group('Paths')
    path_group.add_argument('--models-dir', help='Models directory')
    path_group.add_argument('--log-dir', help='Audit log directory')

    subparsers = parser.add_subparsers(dest='command', help='Command')

    # CONFIG command
    config_parser = subparsers.add_parser('config', help='Show/save configuration')
    config_parser.add_argument('--show', action='store_true',
                               help='Show current configuration')
    config_parser.add_argument('--save', help='Save configuration to file (.yaml/.json)')

    # TRAIN command
    train_parser = subparsers.add_parser('train', help='Train a classifier version')
    train_parser.add_argument('--samples', type=int, help='Synthetic samples')
    train_parser.add_argument('--data', help='Labelled CSV instead of synthetic traffic')
    train_parser.add_argument('--n-estimators', type=int, help='Trees in the forest')
    train_parser.add_argument('--max-depth', type=int, help='Maximum tree depth')
    train_parser.add_argument('--n-jobs', type=int, help='CPU cores (default: auto)')
    train_parser.add_argument('--keep', type=int, help='Versions to keep afterwards')

    # MODELS command
    models_parser = subparsers.add_parser('models', help='Manage model versions')
    models_parser.add_argument('--set-latest', metavar='VERSION',
                               help='Serve this version by default')
    models_parser.add_argument('--cleanup', type=int, metavar='N',
                               help='Keep only the N newest versions')

    # Options shared by the monitoring commands
    def add_session_args(sub):
        sub.add_argument('-w', '--workers', type=int, help='Ingestion worker threads')
        sub.add_argument('--firewall', action='store_true',
                         help='Enable firewall blocking (dry-run unless --firewall-execute)')
        sub.add_argument('--firewall-execute', action='store_true',
                         help='Actually execute firewall rules')
        sub.add_argument('--keep-blocks', action='store_true',
                         help='Leave firewall rules in place on exit')
        sub.add_argument('-o', '--output', help='Output JSON report path')

    # SIMULATE command
    sim_parser = subparsers.add_parser('simulate', help='Monitor synthetic traffic')
    sim_parser.add_argument('-d', '--duration', type=float, help='Duration (seconds)')
    sim_parser.add_argument('-n', '--packets', type=int, help='Number of packets')
    sim_parser.add_argument('--rate', type=float, help='Packets per second')
    sim_parser.add_argument('--malicious-rate', type=float, help='Malicious share (0-1)')
    sim_parser.add_argument('--time-of-day', action='store_true',
                            help='Scale attacks by the hour of day')
    sim_parser.add_argument('--seed', type=int, default=None, help='Random seed')
    add_session_args(sim_parser)

    # PCAP command
    pcap_parser = subparsers.add_parser('pcap', help='Analyze PCAP file')
    pcap_parser.add_argument('--file', help='PCAP file path')
    pcap_parser.add_argument('--max-packets', type=int, help='Maximum packets to process')
    add_session_args(pcap_parser)

    # LIVE command
    live_parser = subparsers.add_parser('live', help='Live packet capture')
    live_parser.add_argument('-i', '--interface', help='Network interface')
    live_parser.add_argument('-d', '--duration', type=int, help='Capture duration (seconds)')
    live_parser.add_argument('-f', '--filter', help='BPF filter')
    live_parser.add_argument('--no-promisc', action='store_true',
                             help='Disable promiscuous mode')
    add_session_args(live_parser)

    return parser


def main(argv=None):
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    # Load config file if specified
    if args.config_file:
        load_config(args.config_file)

    suppress_warnings()
    setup_logging(args.verbose, args.log_file)

    # Dispatch command
    commands = {
        'config': cmd_config,
        'train': cmd_train,
        'models': cmd_models,
        'simulate': cmd_simulate,
        'pcap': cmd_pcap,
        'live': cmd_live,
    }

    try:
        commands[args.command](args)
    except KeyboardInterrupt:
        print("\nOperation cancelled")
        sys.exit(0)
    except Exception as e:
        if args.verbose:
            raise
        print(f"\nError: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
