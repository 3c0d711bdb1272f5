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
import argparse
import dataclasses
import logging
import os
import shlex
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd
from tqdm import tqdm

import physiocorr.config as pc_config
import physiocorr.fit as pc_fit
import physiocorr.io as pc_io
import physiocorr.locate as pc_locate
import physiocorr.maskutil as pc_mask
import physiocorr.regressors as pc_regressors
import physiocorr.util as pc_util
import physiocorr.workflows.parser_funcs as pf

from .utils import setup_logger, shutdown_loggers

LGR = logging.getLogger("GENERAL")
TimingLGR = logging.getLogger("TIMING")

DEFAULT_OUTPUTNAME = "physiocorr"
VARREDUCEDNAME = "pct_var_reduced"


@dataclass
class RunResult:
    """What was written for one run."""

    runid: str
    fmrifile: str
    outputdir: str
    regressorfile: str
    numregressors: Optional[int] = None
    correctedfile: Optional[str] = None
    varreducedfile: Optional[str] = None
    maxvarreduced: Optional[float] = None


def _get_parser():
    """
    Argument parser for physiocorr
    """
    parser = argparse.ArgumentParser(
        prog="physiocorr",
        description=(
            "Find fMRI runs and their physiological logs, estimate physiological noise "
            "regressors for each run, and optionally regress them out of the fMRI data."
        ),
        allow_abbrev=False,
    )

    # Required arguments
    parser.add_argument(
        "usecase",
        type=str,
        choices=list(pc_locate.USECASES.keys()),
        help=(
            "How to find the data: bids_subject_folder (a BIDS subject folder, with or "
            "without sessions), single_run_folder (a folder holding one fMRI file and its "
            "log), or manual_input (files given with --fmrifile and --cardiac/--respiration)."
        ),
    )
    parser.add_argument(
        "outdir",
        type=str,
        help="The output directory.  It will be created if it does not exist.",
    )
    parser.add_argument(
        "correct",
        type=lambda x: pf.is_yesno(parser, x),
        metavar="CORRECT",
        help="'yes' to regress the physiological regressors out of the fMRI data, 'no' to only estimate them.",
    )

    # Input options
    inputs = parser.add_argument_group("Input options")
    inputs.add_argument(
        "--indir",
        dest="indir",
        type=lambda x: pf.is_valid_dir(parser, x),
        metavar="DIR",
        help="Folder to scan (bids_subject_folder and single_run_folder).",
        default=None,
    )
    inputs.add_argument(
        "--fmrifile",
        dest="fmrifile",
        type=lambda x: pf.is_valid_file(parser, x),
        metavar="FILE",
        help="The 4D fMRI file (manual_input).",
        default=None,
    )
    inputs.add_argument(
        "--cardiac",
        dest="cardiac",
        type=str,
        metavar="FILE",
        help="Cardiac log file (manual_input).",
        default=None,
    )
    inputs.add_argument(
        "--respiration",
        dest="respiration",
        type=str,
        metavar="FILE",
        help="Respiration log file (manual_input).",
        default=None,
    )
    inputs.add_argument(
        "--cardiacrespiration",
        dest="cardiacrespiration",
        type=str,
        metavar="FILE",
        help=(
            "Combined cardiac and respiration log file, used for both when neither "
            "--cardiac nor --respiration is an existing file (manual_input)."
        ),
        default=None,
    )
    inputs.add_argument(
        "--vendor",
        dest="vendor",
        type=str,
        metavar="VENDOR",
        help=(
            "Physiological log vendor.  Sets the log file extension: "
            + ", ".join(f"{key} ({value})" for key, value in pc_locate.VENDOR_EXTENSIONS.items())
            + ". Default is Philips."
        ),
        default=None,
    )
    inputs.add_argument(
        "--matchpolicy",
        dest="matchpolicy",
        type=str,
        choices=list(pc_locate.MATCH_POLICIES),
        help=(
            "What to do when several logs match a run: use the first in sorted order "
            "(first), stop (error), or look the run up in --mapping (mapping). "
            "Default is first."
        ),
        default="first",
    )
    inputs.add_argument(
        "--mapping",
        dest="mapping",
        type=lambda x: pf.is_valid_file(parser, x),
        metavar="FILE.json",
        help=(
            "json file mapping fMRI file names to a log file name or a "
            "[cardiac, respiration] pair, for --matchpolicy mapping."
        ),
        default=None,
    )

    # Estimation options
    estimation = parser.add_argument_group("Regressor estimation options")
    estimator = estimation.add_mutually_exclusive_group(required=True)
    estimator.add_argument(
        "--estimator",
        dest="estimator",
        type=str,
        metavar="CMD",
        help=(
            "Command that estimates the regressors.  It is called with the path to the run "
            "configuration json file appended, and must write the regressor file into the "
            "run's output directory."
        ),
        default=None,
    )
    estimator.add_argument(
        "--regressorfile",
        dest="regressorfile",
        type=str,
        metavar="FILE",
        help=(
            "Use precomputed regressors from FILE.  '{runid}' in FILE is replaced by the "
            "run identifier."
        ),
        default=None,
    )
    estimation.add_argument(
        "--config",
        dest="configfile",
        type=lambda x: pf.is_valid_file(parser, x),
        metavar="FILE.json",
        help="json file with (possibly partial, nested) estimation parameters.",
        default=None,
    )
    estimation.add_argument(
        "--param",
        dest="overrides",
        action="append",
        nargs=2,
        metavar=("KEY", "VALUE"),
        help=(
            "Set one estimation parameter, e.g. '--param model.retroicor.order.c 3' or "
            "'--param scan_timing__sqpar__TR 2.0'.  May be given more than once."
        ),
        default=[],
    )

    # Correction options
    correction = parser.add_argument_group("Correction options")
    correction.add_argument(
        "--applymask",
        dest="applymask",
        action="store_true",
        help=(
            "Zero the variance reduction map outside a crude whole brain mask "
            "(voxels with a temporal mean below 0.8 times the grand mean)."
        ),
        default=False,
    )

    # Miscellaneous options
    misc = parser.add_argument_group("Miscellaneous options")
    misc.add_argument(
        "--noprogressbar",
        dest="showprogressbar",
        action="store_false",
        help="Will disable showing the progress bar over runs.",
        default=True,
    )
    misc.add_argument(
        "--debug",
        dest="debug",
        action="store_true",
        help="Output lots of helpful information.",
        default=False,
    )
    pf.addversionopts(parser)

    return parser


def buildconfig(args) -> pc_config.PhysioConfig:
    """Defaults, then the config file, then --param overrides, then the dedicated options."""
    config = pc_config.defaultconfig()
    if args.configfile is not None:
        config = pc_config.loadconfigfile(config, args.configfile)
    config = pc_config.applyoverrides(config, [tuple(x) for x in args.overrides])
    dedicated = [
        ("in_dir", args.indir),
        ("fmri_file", args.fmrifile),
        ("log_files.vendor", args.vendor),
        ("log_files.cardiac", args.cardiac),
        ("log_files.respiration", args.respiration),
        ("log_files.cardiac_respiration", args.cardiacrespiration),
    ]
    return pc_config.applyoverrides(
        config, [(thekey, thevalue) for thekey, thevalue in dedicated if thevalue is not None]
    )


def makeestimator(args) -> pc_regressors.RegressorEstimator:
    if args.regressorfile is not None:
        return pc_regressors.PrecomputedEstimator(args.regressorfile)
    return pc_regressors.ExternalEstimator(shlex.split(args.estimator), debug=args.debug)


def isscaledinteger(theheader) -> bool:
    """True if the header stores integers with a scl_slope/scl_inter other than 1/0."""
    if not np.issubdtype(theheader.get_data_dtype(), np.integer):
        return False
    theslope, theinter = theheader.get_slope_inter()
    if theslope is None:
        return False
    return theslope != 1.0 or (theinter is not None and theinter != 0.0)


def correctrun(run, regressorfile, applymask=False, debug=False) -> RunResult:
    """Regress the regressors out of one run and write the corrected data and variance map."""
    regressors = pc_regressors.readregressors(regressorfile, run.numscans, debug=debug)
    TimingLGR.info(f"Correcting run {run.runid}")
    corrected, pctvarreduced = pc_fit.correctfmri(run.fmridata, regressors, debug=debug)
    if applymask:
        pctvarreduced = pc_mask.applymask(pctvarreduced, pc_mask.makegrandmeanmask(run.fmridata))

    LGR.info("Writing corrected data")
    correctedroot = os.path.join(
        run.outputdir, pc_io.getniftiroot(os.path.basename(run.fmrifile)) + "_corrected"
    )
    ondiskdtype = run.header.get_data_dtype()
    if isscaledinteger(run.header):
        LGR.debug(f"{run.fmrifile} is scaled {ondiskdtype} - letting nibabel rescale the output")
        correctedfile = pc_io.savetonifti(
            corrected, run.header, correctedroot, ondiskdtype=ondiskdtype, debug=debug
        )
    else:
        correctedfile = pc_io.savetonifti(
            pc_fit.castto(corrected, ondiskdtype), run.header, correctedroot, debug=debug
        )
    corrected = None
    varreducedfile = pc_io.savetonifti(
        pctvarreduced,
        run.header,
        os.path.join(run.outputdir, VARREDUCEDNAME),
        debug=debug,
    )
    TimingLGR.info(
        f"Run {run.runid} corrected",
        {
            "message2": run.numscans,
            "message3": "frames",
        },
    )
    return RunResult(
        runid=run.runid,
        fmrifile=run.fmrifile,
        outputdir=run.outputdir,
        regressorfile=regressorfile,
        numregressors=regressors.shape[1],
        correctedfile=correctedfile,
        varreducedfile=varreducedfile,
        maxvarreduced=pc_fit.maxfinite(pctvarreduced),
    )


def physiocorr(args):
    """Run the whole batch: locate, estimate, and optionally correct, one run at a time."""
    starttime = time.time()
    if not pc_util.makeadir(args.outdir):
        raise FileNotFoundError(f"could not create output directory {args.outdir}")
    outputname = os.path.join(args.outdir, DEFAULT_OUTPUTNAME)

    try:
        # Set up loggers for workflow
        logfiles = setup_logger(outputname, debug=args.debug)
        TimingLGR.info("Start")
        LGR.info(f"starting physiocorr {pc_util.version()[0]}")
        pc_util.logmem()
        pc_util.logmem("before processing")

        thecommandline = getattr(args, "commandline", " ".join(sys.argv))
        pc_util.savecommandline([thecommandline], outputname)

        baseconfig = buildconfig(args)
        estimator = makeestimator(args)
        therunoptions = {
            "commandline": thecommandline,
            "usecase": args.usecase,
            "correct": args.correct,
            "matchpolicy": args.matchpolicy,
            "mapping": args.mapping,
            "estimator": repr(estimator),
            "applymask": args.applymask,
            "config": pc_config.configtodict(baseconfig),
        }
        pc_io.writedicttojson(therunoptions, f"{outputname}_options.json")

        runresults = []
        for run in tqdm(
            pc_locate.locateruns(
                args.usecase,
                args.outdir,
                baseconfig,
                matchpolicy=args.matchpolicy,
                mapping=args.mapping,
            ),
            desc="Run",
            unit="runs",
            disable=(not args.showprogressbar),
        ):
            TimingLGR.info(f"Run {run.runid} start")
            LGR.info(f"processing run {run.runid} ({run.fmrifile})")
            if not pc_util.makeadir(run.outputdir):
                raise FileNotFoundError(f"could not create output directory {run.outputdir}")
            runconfig = pc_config.forrun(baseconfig, run)
            regressorfile = estimator.estimate(runconfig, run)
            TimingLGR.info(f"Run {run.runid} regressors estimated")
            if args.correct:
                theresult = correctrun(
                    run, regressorfile, applymask=args.applymask, debug=args.debug
                )
            else:
                theresult = RunResult(
                    runid=run.runid,
                    fmrifile=run.fmrifile,
                    outputdir=run.outputdir,
                    regressorfile=regressorfile,
                )
            runresults.append(theresult)
            run.release()
            pc_util.logmem(f"after run {run.runid}")
    except Exception as theerror:
        LGR.error(f"physiocorr failed: {type(theerror).__name__}: {theerror}")
        shutdown_loggers()
        raise

    if len(runresults) > 0:
        pc_io.writedataframetotsv(
            pd.DataFrame([dataclasses.asdict(x) for x in runresults]),
            f"{outputname}_runsummary.tsv",
        )
    LGR.info(f"processed {len(runresults)} run(s) in {time.time() - starttime:.2f} seconds")

    # shut down logging
    TimingLGR.info("Done")
    shutdown_loggers()

    # reformat timing information and delete the unformatted version
    timingdata, therunoptions["totalruntime"] = pc_util.proctiminglogfile(logfiles["TIMING"])
    pc_io.writevec(timingdata, f"{outputname}_formattedruntimings.tsv")
    Path(logfiles["TIMING"]).unlink(missing_ok=True)

    # save the run options with the timing added
    therunoptions["numruns"] = len(runresults)
    pc_io.writedicttojson(therunoptions, f"{outputname}_options.json")
    return runresults


def process_args(inputargs=None):
    """
    Compile arguments for physiocorr workflow.
    """
    args, argstowrite = pf.setargs(_get_parser, inputargs=inputargs)
    args.commandline = " ".join(argstowrite)
    return args
