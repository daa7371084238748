"""Command-line interface for UKFpy.

This module provides the CLI entry point for running multi-compartment UKF
tractography on diffusion MRI data. It handles argument parsing, configuration
file validation, and hands the run over to the pipeline.

Example:
    UKFpy run --cfg_path path/to/config.ini
    UKFpy run --cfg_path UKF_Template.ini --output_mode verbose
"""

import argparse
import os
import sys

from ukfpy.configs.paths import resolve_config_path
from ukfpy.core import runner


class CLI:
    def __init__(self, subparsers) -> None:
        """Initializes subparsers for input parameters

        :param subparsers: Parsers for each relevant module
        :type subparsers: argparse._SubParsersAction
        """
        self.subparsers = subparsers

    def validate_args(self, args):
        """Validate parsed args.

        master_cli.py passes a dict (via vars(...)); other callers may pass an
        argparse.Namespace. Support both.
        """
        if isinstance(args, dict):
            cfg_path = args.get('cfg_path', None)
        else:
            cfg_path = getattr(args, 'cfg_path', None)

        if cfg_path is None:
            raise ValueError("A configuration file is required: pass --cfg_path path/to/config.ini")

        cfg_path = resolve_config_path(str(cfg_path))
        if not os.path.exists(cfg_path):
            raise FileNotFoundError(
                f"Configuration file not found: {cfg_path}\n"
                f"Please check the path and try again."
            )

        if isinstance(args, dict):
            args['cfg_path'] = cfg_path
        else:
            setattr(args, 'cfg_path', cfg_path)

        return args

    def run(self, args):
        """Run tractography using parsed user inputs; exits with status 1 on failure.

        :param args: User inputs for relevant parameters
        :type args: dictionary
        """
        status = runner.run(args)
        if status:
            sys.exit(status)

    def add_subparser_args(self) -> argparse.ArgumentParser:
        """Defines the `run` subcommand and its arguments."""

        subparser = self.subparsers.add_parser("run",
                                               description="run UKF tractography",
                                               )

        subparser.add_argument("--cfg_path", nargs=None, type=str,
                               dest='cfg_path',
                               required=True,
                               help="The path to the configuration file (or the name of a shipped template)")

        subparser.add_argument(
            "--output_mode",
            type=str,
            required=False,
            default=None,
            choices=["quiet", "standard", "verbose", "debug"],
            help="Terminal output mode (overrides config): quiet | standard | verbose | debug",
        )

        return self.subparsers
