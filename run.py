#!/usr/bin/env python3
"""Command line runner

    python run.py perform <trigger> [--config FILE]
    python run.py schedule [--config FILE]
"""
import sys
import time
import argparse
import logging

from cycler import create_app
from cycler.backup.executor import execute_backup_models
from cycler.backup.finder import Finder, FinderError


def perform(cfg, trigger, config_file):
    finder = Finder(trigger, config_file)
    models = finder.matching() if '*' in trigger else [finder.find()]
    if not models:
        raise FinderError(f"No trigger matches '{trigger}' in '{config_file}'.")

    failed = False
    for report in execute_backup_models(models, cfg):
        for warning in report.warnings:
            logging.getLogger('cycler').warning(warning)
        failed = failed or not report.succeeded or bool(report.cycle_errors)
    return 1 if failed else 0


def schedule(cfg, config_file):
    from cycler.scheduler import init_scheduler, start_scheduler, stop_scheduler

    init_scheduler(Finder('*', config_file).load_models(), cfg)
    start_scheduler()
    try:
        while True:
            time.sleep(60)
    except (KeyboardInterrupt, SystemExit):
        stop_scheduler()
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(description='Store backup artifacts and cycle old ones.')
    parser.add_argument('--env', default=None, help='configuration name (development, production)')
    parser.add_argument('--config', default=None, help='models configuration file')
    subparsers = parser.add_subparsers(dest='command', required=True)

    perform_parser = subparsers.add_parser('perform', help='run a trigger once')
    perform_parser.add_argument('trigger', help="trigger name, '*' may be used as wildcard")
    subparsers.add_parser('schedule', help='run scheduled triggers in the foreground')

    args = parser.parse_args(argv)
    cfg = create_app(args.env)
    config_file = args.config or cfg.CONFIG_FILE

    try:
        if args.command == 'perform':
            return perform(cfg, args.trigger, config_file)
        return schedule(cfg, config_file)
    except FinderError as e:
        logging.getLogger('cycler').error(str(e))
        return 2


if __name__ == '__main__':
    sys.exit(main())
