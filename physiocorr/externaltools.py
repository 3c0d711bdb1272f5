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
import logging
import shutil
import subprocess
from typing import List, Optional

LGR = logging.getLogger("GENERAL")


def findexecutable(command: str) -> Optional[str]:
    """
    Locate an executable file in the system PATH.

    Parameters
    ----------
    command : str
        The name of (or path to) the executable.

    Returns
    -------
    str or None
        The full path to the executable if found, None otherwise.
    """
    return shutil.which(command)


def runcmd(thecmd: List[str], fake: bool = False, debug: bool = False) -> int:
    """
    Execute a command using subprocess.call or simulate execution.

    Parameters
    ----------
    thecmd : list of str
        Command to execute, the program followed by its arguments.
    fake : bool, optional
        If True, print the command that would be executed without actually
        running it. Default is False.
    debug : bool, optional
        If True, print the command before executing or simulating. Default is False.

    Returns
    -------
    int
        The return code of the command (0 when faked).

    Examples
    --------
    >>> runcmd(['echo', 'hello'], fake=True)
    echo hello
    <BLANKLINE>
    0
    """
    if debug:
        print(thecmd)
    if fake:
        print(" ".join(thecmd))
        print()
        return 0
    LGR.debug(f"running {' '.join(thecmd)}")
    return subprocess.call(thecmd)
