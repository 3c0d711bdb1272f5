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
import os
import platform
from datetime import datetime
from typing import List, Optional, Tuple

import pandas as pd

import physiocorr.io as pc_io
from physiocorr.version import __version__

LGR = logging.getLogger("GENERAL")
TimingLGR = logging.getLogger("TIMING")
MemoryLGR = logging.getLogger("MEMORY")

lastmaxrss_parent = 0
lastmaxrss_child = 0


def version() -> Tuple[str, str, str]:
    """
    Version information for the package and the interpreter running it.

    Returns
    -------
    tuple of str
        The package version, the python version, and the platform.
    """
    return __version__, platform.python_version(), platform.platform()


# ---------------------------------------- memory functions ------------------------------------
def formatmemamt(meminbytes: int) -> str:
    """
    Format memory amount in bytes to human readable format.

    Examples
    --------
    >>> formatmemamt(1024)
    '1.000kB'
    >>> formatmemamt(1048576)
    '1.000MB'
    """
    units = ["B", "kB", "MB", "GB", "TB"]
    unitnumber = 1
    for theunit in units:
        if meminbytes < 1024 * unitnumber:
            return f"{round(meminbytes / unitnumber, 3):.3f}{theunit}"
        unitnumber *= 1024
    return f"{round(meminbytes / (unitnumber // 1024), 3):.3f}{units[-1]}"


def logmem(msg: Optional[str] = None) -> None:
    """
    Log the memory usage of this process to the MEMORY logger.

    Parameters
    ----------
    msg : str, optional
        Label for the first column.  If None, the column headers are logged
        instead. Default is None.

    Notes
    -----
    The maximum resident set size comes from ``resource.getrusage``, which
    reports it in kilobytes on Linux and bytes on macOS.  Not available on Windows.
    """
    global lastmaxrss_parent, lastmaxrss_child
    if platform.system() == "Windows":
        MemoryLGR.info("Not available on Windows")
        return
    import resource

    if msg is None:
        outvals = [
            "",
            "Self Max RSS",
            "Self Diff RSS",
            "Children Max RSS",
            "Children Diff RSS",
        ]
        lastmaxrss_parent = 0
        lastmaxrss_child = 0
    else:
        scale = 1 if platform.system() == "Darwin" else 1024
        outvals = [msg]
        rcusage = resource.getrusage(resource.RUSAGE_SELF)
        outvals.append(formatmemamt(rcusage.ru_maxrss * scale))
        outvals.append(formatmemamt((rcusage.ru_maxrss - lastmaxrss_parent) * scale))
        lastmaxrss_parent = rcusage.ru_maxrss
        rcusage = resource.getrusage(resource.RUSAGE_CHILDREN)
        outvals.append(formatmemamt(rcusage.ru_maxrss * scale))
        outvals.append(formatmemamt((rcusage.ru_maxrss - lastmaxrss_child) * scale))
        lastmaxrss_child = rcusage.ru_maxrss
    MemoryLGR.info("\t".join(outvals))


# ---------------------------------------- file functions --------------------------------------
def makeadir(pathname: str) -> bool:
    """
    Create a directory if it doesn't already exist.

    Returns
    -------
    bool
        True if the directory exists or was successfully created, False otherwise.
    """
    try:
        os.makedirs(pathname)
    except OSError:
        if os.path.isdir(pathname):
            return True
        else:
            LGR.error(f"{pathname} does not exist, and could not create it")
            return False
    return True


def savecommandline(theargs: List[str], thename: str) -> None:
    """Save a command line to ``<thename>_commandline.txt``."""
    pc_io.writevec([" ".join(theargs)], thename + "_commandline.txt")


# ---------------------------------------- timing functions ------------------------------------
def proctiminglogfile(logfilename: str, timewidth: int = 10) -> Tuple[List[str], float]:
    """
    Turn a timing log into a table of elapsed times.

    Parameters
    ----------
    logfilename : str
        Timing log written by the TIMING logger: tab separated time stamp
        (``YYYYMMDDTHHMMSS.fff``), description, and optionally a count and its units.
    timewidth : int, optional
        Width to right justify the time columns to. Default is 10.

    Returns
    -------
    outputlines : list of str
        One line per log entry: total and incremental time, and the description
        (with a processing rate where a count was logged).
    totaldiff : float
        Total elapsed time in seconds.
    """
    timingdata = pd.read_csv(
        logfilename,
        sep="\t",
        header=None,
        names=["time", "description", "number", "units"],
        na_values=["None"],
        keep_default_na=True,
    )
    thenumbers = pd.to_numeric(timingdata["number"], errors="coerce")
    thetimes = [datetime.strptime(x, "%Y%m%dT%H%M%S.%f") for x in timingdata["time"]]
    outputlines = [f"{'Total (s)'.rjust(timewidth)}\t{'Diff. (s)'.rjust(timewidth)}\tDescription"]
    outputlines += [
        f"{'0.0'.rjust(timewidth)}\t{'0.0'.rjust(timewidth)}\t{timingdata['description'].iloc[0]}"
    ]
    totaldiff = 0.0
    for therow in range(1, timingdata.shape[0]):
        totaldiff = (thetimes[therow] - thetimes[0]).total_seconds()
        incdiff = (thetimes[therow] - thetimes[therow - 1]).total_seconds()
        theoutputline = (
            f"{f'{totaldiff:.2f}'.rjust(timewidth)}\t{f'{incdiff:.2f}'.rjust(timewidth)}\t"
            f"{timingdata['description'].iloc[therow]}"
        )
        if not pd.isna(thenumbers.iloc[therow]):
            theunits = timingdata["units"].iloc[therow]
            if incdiff == 0.0:
                speed = "undefined"
            else:
                speed = f"{float(thenumbers.iloc[therow]) / incdiff:.2f}"
            theoutputline += (
                f" ({thenumbers.iloc[therow]:g} {theunits} @ {speed} {theunits}/s)"
            )
        outputlines += [theoutputline]
    return outputlines, totaldiff
