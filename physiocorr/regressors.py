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
Physiological noise regressors.

Regressors are estimated outside this package: an estimator takes the
configuration for one run, causes a whitespace delimited regressor file (one
row per fMRI frame, one column per regressor) to be written into the run's
output directory, and returns its path.
"""
import logging
import os
import shutil
from typing import Any, List

import numpy as np
from numpy.typing import NDArray

import physiocorr.config as pc_config
import physiocorr.externaltools as pc_exttools
import physiocorr.io as pc_io
import physiocorr.util as pc_util
from physiocorr.fit import RegressorMismatchError

LGR = logging.getLogger("GENERAL")

RUNCONFIGFILE = "physio_config.json"


class EstimationError(RuntimeError):
    """The regressor estimator failed or did not produce a regressor file."""


def regressorfilename(runconfig: pc_config.PhysioConfig) -> str:
    """Where the estimator writes the regressors for a run."""
    return os.path.join(runconfig.save_dir, runconfig.model.output_multiple_regressors)


def writerunconfig(runconfig: pc_config.PhysioConfig) -> str:
    """Save the run configuration as json in the run's output directory."""
    if not pc_util.makeadir(runconfig.save_dir):
        raise EstimationError(f"could not create output directory {runconfig.save_dir}")
    configfile = os.path.join(runconfig.save_dir, RUNCONFIGFILE)
    pc_io.writedicttojson(pc_config.configtodict(runconfig), configfile)
    return configfile


class RegressorEstimator:
    """Base class for regressor estimators."""

    def estimate(self, runconfig: pc_config.PhysioConfig, run: Any) -> str:
        """
        Produce the regressor file for one run.

        Parameters
        ----------
        runconfig : PhysioConfig
            The configuration for this run (see ``config.forrun``).
        run : Run
            The run.

        Returns
        -------
        str
            Path to the regressor file.
        """
        raise NotImplementedError


class ExternalEstimator(RegressorEstimator):
    """
    Estimate regressors with an external program.

    The run configuration is written to ``physio_config.json`` in the run's
    output directory, and the program is called with the path to that file as
    its last argument.  It must write the regressor file named by
    ``model.output_multiple_regressors`` into ``save_dir``, and any figures
    requested in ``verbose``.
    """

    def __init__(self, command: List[str], fake: bool = False, debug: bool = False):
        if len(command) == 0:
            raise ValueError("no estimator command given")
        self.command = list(command)
        self.fake = fake
        self.debug = debug

    def __repr__(self):
        return f"ExternalEstimator(command={self.command!r}, fake={self.fake})"

    def estimate(self, runconfig: pc_config.PhysioConfig, run: Any) -> str:
        themissing = pc_config.missingrequired(runconfig)
        if len(themissing) > 0:
            raise EstimationError(
                f"run {run.runid}: required parameters not set: {', '.join(themissing)}"
            )
        if not self.fake and pc_exttools.findexecutable(self.command[0]) is None:
            raise EstimationError(f"estimator command {self.command[0]} not found")
        configfile = writerunconfig(runconfig)

        LGR.info(f"Creating physiological regressors for run {run.runid}")
        returncode = pc_exttools.runcmd(
            self.command + [configfile], fake=self.fake, debug=self.debug
        )
        if returncode != 0:
            raise EstimationError(
                f"estimator {' '.join(self.command)} failed on run {run.runid} "
                f"with return code {returncode}"
            )
        thefile = regressorfilename(runconfig)
        if not self.fake and not os.path.isfile(thefile):
            raise EstimationError(f"estimator did not write regressor file {thefile}")
        LGR.info("Complete.")
        return thefile


class PrecomputedEstimator(RegressorEstimator):
    """
    Use regressors that have already been estimated.

    ``source`` is a regressor file, or a pattern in which ``{runid}`` is replaced
    by the run identifier.  The file is copied into the run's output directory.
    """

    def __init__(self, source: str):
        self.source = source

    def __repr__(self):
        return f"PrecomputedEstimator(source={self.source!r})"

    def sourcefor(self, run: Any) -> str:
        return self.source.replace("{runid}", run.runid)

    def estimate(self, runconfig: pc_config.PhysioConfig, run: Any) -> str:
        thesource = self.sourcefor(run)
        if not os.path.isfile(thesource):
            raise EstimationError(f"regressor file {thesource} for run {run.runid} does not exist")
        writerunconfig(runconfig)
        thefile = regressorfilename(runconfig)
        if os.path.abspath(thesource) != os.path.abspath(thefile):
            shutil.copyfile(thesource, thefile)
        LGR.info(f"using precomputed regressors {thesource} for run {run.runid}")
        return thefile


def readregressors(filename: str, numscans: int, debug: bool = False) -> NDArray:
    """
    Read a regressor file.

    Parameters
    ----------
    filename : str
        Whitespace delimited text, one row per frame.  A header line is skipped.
    numscans : int
        Number of frames in the fMRI data.
    debug : bool, optional
        Print debug information. Default is False.

    Returns
    -------
    NDArray
        (numscans, numregressors) float64 array.

    Raises
    ------
    RegressorMismatchError
        If the number of rows is not ``numscans``.
    """
    thevecs = pc_io.readvecs(filename, debug=debug)
    if thevecs.ndim != 2 or thevecs.size == 0:
        regressors = np.zeros((0, 0), dtype=np.float64)
    else:
        regressors = np.transpose(thevecs)
    if debug:
        print(f"readregressors: {filename=}, {regressors.shape=}")
    if regressors.shape[0] != numscans:
        raise RegressorMismatchError(
            f"{filename} has {regressors.shape[0]} rows, but the fMRI data has {numscans} frames"
        )
    LGR.info(f"read {regressors.shape[1]} regressors from {filename}")
    return regressors
