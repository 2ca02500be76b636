#!/usr/bin/env python3
"""
Command-line stage for publishing results and exchanging phase legacy.

Lets shell-driven workers use the shared results file and the legacy store:
- Publish the status of a test case or a single test
- Remove the results file before a new run
- Save legacy read from stdin and load it back
- Show the effective harness configuration

Configuration comes from an optional harness-config.yaml, environment
variables and finally the command-line options. The script exits with a
non-zero status code on any failure.
"""

import argparse
import sys
from datetime import datetime
from typing import List, Optional

import yaml

from harness_config import HarnessConfig, config_to_dict, load_config, parse_lock_timeout
from harness_errors import ConfigurationError, HarnessError
from phase_legacy import PhaseLegacyStore, dump_yaml, load_yaml
from result_publisher import ResultPublisher


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Publish test results into the shared results file and exchange legacy between phases',
        # Subcommand --result must not be taken as an abbreviation of --results-dir
        allow_abbrev=False
    )
    parser.add_argument(
        '--config',
        type=str,
        help='Path to harness-config.yaml file'
    )
    parser.add_argument(
        '--results-dir',
        type=str,
        help='Directory of the results file (overrides config and HARNESS_RESULTS_DIR)'
    )
    parser.add_argument(
        '--results-file',
        type=str,
        help='Name of the results file (default: results.json)'
    )
    parser.add_argument(
        '--legacy-dir',
        type=str,
        help='Directory of legacy files'
    )
    parser.add_argument(
        '--lock-timeout',
        type=str,
        help='Seconds to wait for the results file lock, "none" to wait forever'
    )

    subparsers = parser.add_subparsers(dest='command', required=True)

    test_case = subparsers.add_parser('publish-test-case', help='Publish status of a test case')
    test_case.add_argument('test_case')
    test_case.add_argument('status')
    test_case.add_argument('--result', type=str)
    test_case.add_argument('--start', type=str, help='Start time in ISO-8601 format')
    test_case.add_argument('--end', type=str, help='End time in ISO-8601 format')

    test = subparsers.add_parser('publish-test', help='Publish status of a single test')
    test.add_argument('test_case')
    test.add_argument('test')
    test.add_argument('status')
    test.add_argument('--result', type=str)
    test.add_argument('--message', type=str)

    subparsers.add_parser('clean', help='Remove the results file')

    legacy_save = subparsers.add_parser('legacy-save', help='Save legacy (YAML from stdin) under a key')
    legacy_save.add_argument('key')

    legacy_load = subparsers.add_parser('legacy-load', help='Print legacy stored under a key as YAML')
    legacy_load.add_argument('key')

    subparsers.add_parser('show-config', help='Print the effective configuration')

    return parser


def resolve_config(args: argparse.Namespace) -> HarnessConfig:
    """Load configuration and apply command-line overrides."""
    config = load_config(args.config)
    if args.results_dir:
        config.results_dir = args.results_dir
    if args.results_file:
        config.results_file = args.results_file
    if args.legacy_dir:
        config.legacy_dir = args.legacy_dir
    if args.lock_timeout is not None:
        config.lock_timeout = parse_lock_timeout(args.lock_timeout)
    return config


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError as e:
        raise ConfigurationError(f"Invalid ISO-8601 datetime: {value}") from e


def run(args: argparse.Namespace) -> None:
    config = resolve_config(args)

    if args.command == 'publish-test-case':
        publisher = ResultPublisher.from_config(config)
        publisher.publish_test_case_status(
            args.test_case,
            args.status,
            result=args.result,
            start_time=parse_datetime(args.start),
            end_time=parse_datetime(args.end)
        )
        print(f"✓ Published test case {args.test_case}: {args.status}")

    elif args.command == 'publish-test':
        publisher = ResultPublisher.from_config(config)
        publisher.publish_test_status(
            args.test_case,
            args.test,
            args.status,
            result=args.result,
            message=args.message
        )
        print(f"✓ Published test {args.test_case}::{args.test}: {args.status}")

    elif args.command == 'clean':
        publisher = ResultPublisher.from_config(config)
        publisher.clean()
        print(f"✓ Removed results file {publisher.get_file_path()}")

    elif args.command == 'legacy-save':
        try:
            data = load_yaml(sys.stdin.read())
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML on stdin: {str(e)}") from e
        store = PhaseLegacyStore(legacy_dir=config.legacy_dir)
        store.save_with_key(data, args.key)
        print(f"✓ Saved legacy to {store.get_legacy_path(args.key)}")

    elif args.command == 'legacy-load':
        store = PhaseLegacyStore(legacy_dir=config.legacy_dir)
        data = store.load_with_key(args.key)
        print(dump_yaml(data), end='')

    elif args.command == 'show-config':
        print(yaml.safe_dump(config_to_dict(config), default_flow_style=False, sort_keys=False), end='')


def main(argv: Optional[List[str]] = None):
    """Main entry point for the results stage."""
    args = build_parser().parse_args(argv)

    try:
        run(args)
    except FileNotFoundError as e:
        print(f"✗ {str(e)}", file=sys.stderr)
        sys.exit(1)
    except HarnessError as e:
        print(f"✗ {type(e).__name__}: {str(e)}", file=sys.stderr)
        sys.exit(1)

    sys.exit(0)


if __name__ == '__main__':
    main()
