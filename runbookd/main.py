"""Main entry point for the runbook orchestration engine"""

import sys
import argparse

from runbookd import __version__
from runbookd.config.settings import load_config
from runbookd.exceptions import ConfigurationError, RunbookNotFound
from runbookd.utils.helpers import parse_label_args
from runbookd.utils.logger import setup_logger


def parse_args(argv=None):
    """Parse command-line arguments"""
    parser = argparse.ArgumentParser(
        prog='runbookd',
        description='Alert rule evaluation and runbook orchestration engine'
    )

    parser.add_argument(
        '--config',
        '-c',
        type=str,
        default=None,
        help='Path to configuration file (YAML)'
    )

    parser.add_argument(
        '--log-level',
        '-l',
        type=str,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        default=None,
        help='Override log level'
    )

    parser.add_argument(
        '--version',
        '-v',
        action='version',
        version=f'runbookd v{__version__}'
    )

    subparsers = parser.add_subparsers(dest='command')

    subparsers.add_parser('run', help='Start the engine (default)')

    subparsers.add_parser('validate', help='Validate configuration, rules and runbooks')

    dry_run = subparsers.add_parser(
        'dry-run',
        help="Render a runbook's resolution steps without executing them"
    )
    dry_run.add_argument('rule', help='Rule name')
    dry_run.add_argument(
        '--label',
        action='append',
        default=[],
        metavar='KEY=VALUE',
        help='Alert label (repeatable)'
    )
    dry_run.add_argument(
        '--severity',
        default='critical',
        help='Severity tier to render (default: critical)'
    )
    dry_run.add_argument(
        '--value',
        type=float,
        default=None,
        help='Observed metric value used for applicability checks'
    )

    check = subparsers.add_parser(
        'check',
        help='Evaluate every rule once against the metric source and print breaches'
    )
    check.add_argument(
        '--all',
        action='store_true',
        help='Also print tiers that are not breaching'
    )

    return parser.parse_args(argv)


def validate(config):
    """Load rules and runbooks and cross-check them"""
    from runbookd.alerts.alert_rule import load_alert_rules
    from runbookd.runbooks.runbook import RunbookRegistry, load_runbooks

    engine_config = config['engine']
    rules = load_alert_rules(engine_config['rules_file']) if engine_config.get('rules_file') else []
    runbooks = load_runbooks(engine_config['runbooks_file']) if engine_config.get('runbooks_file') else RunbookRegistry()
    runbooks.validate_against(rules)
    return rules, runbooks


def dry_run(config, args):
    """Print the resolution steps a runbook would run for a hypothetical alert"""
    from runbookd.alerts.alert_rule import Severity
    from runbookd.actions.executor import ActionExecutor
    from runbookd.runbooks.dispatcher import RunbookDispatcher
    from runbookd.utils.helpers import to_label_set

    _, runbooks = validate(config)
    dispatcher = RunbookDispatcher(runbooks, ActionExecutor(config['actions'], {}))
    try:
        steps = dispatcher.dry_run(
            args.rule,
            to_label_set(parse_label_args(args.label)),
            Severity.parse(args.severity),
            args.value,
        )
    finally:
        dispatcher.executor.shutdown(wait=False)

    if not steps:
        print(f"Runbook for {args.rule} has no resolution steps")
    for index, step in enumerate(steps, 1):
        print(f"{index}. {step}")
    return 0


def check(config, args):
    """
    Evaluate every enabled rule once and print each tier's observation.

    Read-only: no alert state is kept, no runbook runs and nobody is paged.
    Returns 1 when any tier breaches, 0 otherwise.
    """
    from datetime import datetime

    from prometheus_client import REGISTRY

    from runbookd.alerts.rule_engine import RuleEngine
    from runbookd.metrics import create_metric_source
    from runbookd.utils.helpers import format_labels

    rules, _ = validate(config)
    source = create_metric_source(config['metric_source'], registry=REGISTRY)
    rule_engine = RuleEngine(source)
    now = datetime.now()
    breaching = 0

    try:
        for rule in rules:
            if not rule.enabled:
                continue
            observations = rule_engine.evaluate_detailed(rule, now)
            if not observations:
                print(f"{rule.name}: no data")
                continue
            for labels in sorted(observations):
                for tier in rule.tiers:
                    observation = observations[labels][tier.severity]
                    if observation.breach:
                        breaching += 1
                        status = "BREACH"
                    elif observation.breach is None:
                        status = "unknown"
                    else:
                        status = "ok"
                    if status == "ok" and not args.all:
                        continue
                    where = f"[{format_labels(labels)}]" if labels else ""
                    print(
                        f"{rule.name}{where}/{tier.severity.label}: {status} "
                        f"(value={observation.value}, threshold {rule.operator} {tier.threshold})"
                    )
    finally:
        source.close()

    print(f"{breaching} breaching tiers")
    return 1 if breaching else 0


def main(argv=None):
    """Main entry point"""
    args = parse_args(argv)
    command = args.command or 'run'

    try:
        config = load_config(args.config)

        if args.log_level:
            config['engine']['log_level'] = args.log_level

        logger = setup_logger(config)

        if command == 'validate':
            rules, runbooks = validate(config)
            print(f"OK: {len(rules)} rules, {len(runbooks)} runbooks")
            return 0

        if command == 'dry-run':
            return dry_run(config, args)

        if command == 'check':
            return check(config, args)

        logger.info("=" * 60)
        logger.info(f"runbookd v{__version__}")
        logger.info("=" * 60)

        if args.config:
            logger.info(f"Loaded configuration from: {args.config}")
        else:
            logger.info("Using default configuration")

        from runbookd.engine import Engine
        engine = Engine(config)
        engine.start()

        return 0

    except (ConfigurationError, FileNotFoundError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    except (RunbookNotFound, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        print("\nShutdown requested by user")
        return 0
    except Exception as e:
        print(f"Fatal error: {e}", file=sys.stderr)
        import traceback
        traceback.print_exc()
        return 1


if __name__ == '__main__':
    sys.exit(main())
