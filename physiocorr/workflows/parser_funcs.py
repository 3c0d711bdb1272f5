#!/usr/bin/env python
# -*- coding: utf-8 -*-
#
#   Copyright 2024-2025 physiocorr developers
#
#   Licensed under the Apache License, Version 2.0 (the "License");
#   you may not use this file except in compliance with the License.
#   You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
#   Unless required by applicable law or agreed to in writing, software
#   distributed under the License is distributed on an "AS IS" BASIS,
#   WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#   See the License for the specific language governing permissions and
#   limitations under the License.
#
#
"""
Utility functions for parsers.
"""
import argparse
import os.path as op
import sys
from argparse import Namespace
from typing import Callable, List, Optional, Tuple

import physiocorr.config as pc_config
import physiocorr.util as pc_util


def addversionopts(parser: argparse.ArgumentParser) -> None:
    """
    Add '--version' and '--detailedversion' options to a parser.
    """
    version_opts = parser.add_argument_group("Version options")
    version_opts.add_argument(
        "--version",
        action="version",
        help="Show simplified version information and exit",
        version=f"%(prog)s {pc_util.version()[0]}",
    )
    version_opts.add_argument(
        "--detailedversion",
        action="version",
        help="Show detailed version information and exit",
        version=f"%(prog)s {pc_util.version()}",
    )


def is_valid_file(parser: argparse.ArgumentParser, arg: Optional[str]) -> Optional[str]:
    """
    Check if argument is an existing file.

    Returns the argument unchanged; a missing file is reported with ``parser.error``.
    """
    if arg is not None and not op.isfile(arg):
        parser.error(f"The file {arg} does not exist!")
    return arg


def is_valid_dir(parser: argparse.ArgumentParser, arg: Optional[str]) -> Optional[str]:
    """Check if argument is an existing directory."""
    if arg is not None and not op.isdir(arg):
        parser.error(f"The directory {arg} does not exist!")
    return arg


def is_yesno(parser: argparse.ArgumentParser, arg: str) -> bool:
    """
    Turn a yes/no argument into a bool.

    Examples
    --------
    >>> is_yesno(argparse.ArgumentParser(), "YES")
    True
    """
    thearg = arg.strip().lower()
    if thearg in pc_config.TRUE_STRINGS:
        return True
    if thearg in pc_config.FALSE_STRINGS:
        return False
    parser.error(f"{arg} is not 'yes' or 'no'")


def setargs(
    thegetparserfunc: Callable[[], argparse.ArgumentParser],
    inputargs: Optional[List[str]] = None,
) -> Tuple[Namespace, List[str]]:
    """
    Compile arguments either from the command line, or from an argument list.

    Parameters
    ----------
    thegetparserfunc : callable
        Returns the configured ``argparse.ArgumentParser``.
    inputargs : list of str, optional
        Arguments to parse.  If None (default), ``sys.argv`` is used.

    Returns
    -------
    args : argparse.Namespace
        The parsed arguments.
    argstowrite : list of str
        The argument list that was parsed.
    """
    if inputargs is None:
        # get arguments from the command line
        try:
            args = thegetparserfunc().parse_args()
            argstowrite = sys.argv
        except SystemExit:
            print("Use --help option for detailed information on options.")
            raise
    else:
        # get arguments from the passed list
        try:
            args = thegetparserfunc().parse_args(inputargs)
            argstowrite = inputargs
        except SystemExit:
            print("Use --help option for detailed information on options.")
            raise

    return args, argstowrite


def generic_init(
    theparser: Callable[[], argparse.ArgumentParser],
    themain: Callable[[Namespace], None],
    inputargs: Optional[List[str]] = None,
) -> None:
    """
    Compile arguments either from the command line, or from an argument list,
    and run a workflow with them.

    The raw command line is saved as ``args.commandline``.
    """
    args, argstowrite = setargs(theparser, inputargs=inputargs)

    # save the raw command line
    args.commandline = " ".join(argstowrite)

    themain(args)
