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
Find fMRI runs and the physiological logs that go with them.

Three layouts are supported:

``bids_subject_folder``
    A subject folder holding ``func`` directly or one ``ses-*`` folder per
    session, each with a ``func`` folder containing any number of runs and
    their logs.
``single_run_folder``
    A folder holding exactly one fMRI file and its log.
``manual_input``
    The fMRI file and the log file(s) are named explicitly.

Each locator first resolves every fMRI file and its log(s) without opening any
volume, so a missing or ambiguous log stops the batch before any run is
processed.  It then returns a generator that loads a run's volume just before
the run is yielded, so only one volume needs to be in memory at a time.
"""
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from numpy.typing import NDArray

import physiocorr.io as pc_io

LGR = logging.getLogger("GENERAL")

VENDOR_EXTENSIONS = {
    "BIDS": ".tsv.gz",
    "Philips": ".log",
    "Biopac_Txt": ".txt",
    "Biopac_Mat": ".mat",
    "BrainProducts": ".eeg",
}

MATCH_POLICIES = ("first", "error", "mapping")

RESULTS_SUFFIX = "_physio_results"


class LocatorError(Exception):
    """Base class for errors finding runs and logs."""


class FolderStructureError(LocatorError, ValueError):
    """The input folder is not laid out the way the use case expects."""


class MissingInputError(LocatorError, FileNotFoundError):
    """A required input was not given or could not be found."""


class MissingLogfileError(MissingInputError):
    """No physiological log matches an fMRI run."""


class AmbiguousLogfileError(LocatorError, ValueError):
    """More than one physiological log matches an fMRI run."""


@dataclass
class Run:
    """
    One fMRI run ready for regressor estimation and correction.

    Attributes
    ----------
    fmrifile : str
        Path to the fMRI volume.
    logfiles : tuple of str
        Every log file that matched the run.
    cardiac, respiration : str or None
        The logs handed to the estimator for each signal.
    outputdir : str
        Where the results for this run are written.
    runid : str
        The run identifier (the fMRI file name up to ``_bold``).
    numslices, numscans : int
        Array dimensions 3 and 4 of the volume.
    fmridata : NDArray
        The volume as float64.
    header : nibabel header
        The volume's header; ``header.get_data_dtype()`` is the on-disk type.
    """

    fmrifile: str
    logfiles: Tuple[str, ...]
    cardiac: Optional[str]
    respiration: Optional[str]
    outputdir: str
    runid: str
    numslices: int
    numscans: int
    fmridata: Optional[NDArray] = field(default=None, repr=False, compare=False)
    header: Any = field(default=None, repr=False, compare=False)

    def release(self) -> None:
        """Drop the loaded volume."""
        self.fmridata = None
        self.header = None


def getlogextension(vendor: str) -> str:
    """
    File extension of the physiological logs written by a vendor.

    Unknown vendors get an empty extension, which matches no log file.

    Examples
    --------
    >>> getlogextension("BIDS")
    '.tsv.gz'
    >>> getlogextension("Siemens")
    ''
    """
    return VENDOR_EXTENSIONS.get(vendor, "")


def getfoldercontents(folder: str) -> List[str]:
    """
    Sorted names of the entries in a folder, leaving out hidden ones.

    Raises
    ------
    MissingInputError
        If the folder does not exist.
    """
    if not os.path.isdir(folder):
        raise MissingInputError(f"Folder {folder} does not exist.")
    return sorted(x for x in os.listdir(folder) if not x.startswith("."))


def getrunid(fmrifilename: str) -> str:
    """
    The run identifier of an fMRI file: the file name up to ``_bold``.

    Examples
    --------
    >>> getrunid("sub-01_task-rest_run-1_bold.nii.gz")
    'sub-01_task-rest_run-1'
    >>> getrunid("rest.nii")
    'rest'
    """
    thename = os.path.basename(fmrifilename)
    if "_bold" in thename:
        return thename[: thename.index("_bold")]
    return pc_io.getniftiroot(thename)


def getoutputdir(outdir: str, fmrifilename: str) -> str:
    """Per-run output directory, ``<outdir>/<fmri root>_physio_results``."""
    return os.path.join(outdir, pc_io.getniftiroot(os.path.basename(fmrifilename)) + RESULTS_SUFFIX)


def _descendifnested(thefolder: str, thecontents: List[str]) -> Tuple[str, List[str]]:
    # a folder with one subfolder and nothing else is stepped into
    if len(thecontents) != 1 or not os.path.isdir(os.path.join(thefolder, thecontents[0])):
        raise FolderStructureError("Invalid folder structure. Check BIDS specifications.")
    thefolder = os.path.join(thefolder, thecontents[0])
    LGR.debug(f"descending into {thefolder}")
    return thefolder, getfoldercontents(thefolder)


def selectlogfiles(
    fmrifile: str,
    candidates: List[str],
    matchpolicy: str = "first",
    mapping: Optional[Dict[str, Union[str, List[str]]]] = None,
) -> Tuple[Tuple[str, ...], str, str]:
    """
    Decide which log file(s) go with an fMRI file.

    Parameters
    ----------
    fmrifile : str
        Path to the fMRI file.
    candidates : list of str
        Paths of the log files that matched the run, in sorted order.
    matchpolicy : str, optional
        ``first`` (use the first candidate, warning if there were several),
        ``error`` (more than one candidate is an error), or ``mapping`` (look the
        fMRI file name up in ``mapping``).  Default is ``first``.
    mapping : dict, optional
        fMRI file name to a log file name, or to a [cardiac, respiration] pair.
        Names are relative to the folder of the fMRI file.

    Returns
    -------
    logfiles : tuple of str
        All the log files that matched.
    cardiac, respiration : str
        The logs to use for each signal.

    Raises
    ------
    MissingLogfileError
        If there is no log for the run.
    AmbiguousLogfileError
        If the policy is ``error`` and more than one log matched.
    ValueError
        If the match policy is unknown.
    """
    thename = os.path.basename(fmrifile)
    if matchpolicy == "mapping":
        if mapping is None or thename not in mapping:
            raise MissingLogfileError(f"Logfile for fMRI run {thename} not found in mapping.")
        thefolder = os.path.dirname(fmrifile)
        thelogs = mapping[thename]
        if isinstance(thelogs, str):
            thelogs = [thelogs, thelogs]
        if len(thelogs) != 2:
            raise ValueError(
                f"mapping for {thename} must be a log file or a [cardiac, respiration] pair"
            )
        cardiac, respiration = [os.path.join(thefolder, x) for x in thelogs]
        for thelog in (cardiac, respiration):
            if not os.path.isfile(thelog):
                raise MissingLogfileError(f"Logfile {thelog} for fMRI run {thename} not found.")
        return tuple(dict.fromkeys((cardiac, respiration))), cardiac, respiration

    if len(candidates) == 0:
        raise MissingLogfileError(f"Logfile for fMRI run {thename} not found.")
    if matchpolicy == "error":
        if len(candidates) > 1:
            raise AmbiguousLogfileError(
                f"{len(candidates)} logfiles match fMRI run {thename}: "
                + ", ".join(os.path.basename(x) for x in candidates)
            )
    elif matchpolicy == "first":
        if len(candidates) > 1:
            LGR.warning(
                f"{len(candidates)} logfiles match fMRI run {thename} - "
                f"using {os.path.basename(candidates[0])}"
            )
    else:
        raise ValueError(f"unknown match policy {matchpolicy}")
    return tuple(candidates), candidates[0], candidates[0]


@dataclass(frozen=True)
class PendingRun:
    """A run whose inputs have been found but whose volume is not loaded yet."""

    fmrifile: str
    logfiles: Tuple[str, ...]
    cardiac: Optional[str]
    respiration: Optional[str]
    outputdir: str

    def load(self) -> Run:
        fmridata, header, numslices, numscans = pc_io.loadfmri(self.fmrifile)
        LGR.info(
            f"loaded run {os.path.basename(self.fmrifile)}: {numslices} slices, {numscans} scans"
        )
        return Run(
            fmrifile=self.fmrifile,
            logfiles=self.logfiles,
            cardiac=self.cardiac,
            respiration=self.respiration,
            outputdir=self.outputdir,
            runid=getrunid(self.fmrifile),
            numslices=numslices,
            numscans=numscans,
            fmridata=fmridata,
            header=header,
        )


def _loadruns(pendingruns: List[PendingRun]) -> Iterator[Run]:
    for thepending in pendingruns:
        yield thepending.load()


def _sessionfolders(subjectfolder: str, contents: List[str]) -> List[str]:
    # only directories count; sub-01_sessions.tsv sits beside the session folders
    return [x for x in contents if "ses" in x and os.path.isdir(os.path.join(subjectfolder, x))]


def locatebidsruns(
    indir: Optional[str],
    outdir: str,
    vendor: str,
    matchpolicy: str = "first",
    mapping: Optional[Dict[str, Union[str, List[str]]]] = None,
) -> Iterator[Run]:
    """
    Find every run in a BIDS style subject folder.

    Parameters
    ----------
    indir : str
        The subject folder (or a folder holding only the subject folder).
    outdir : str
        Results go in ``<outdir>/<fmri root>_physio_results``.
    vendor : str
        Selects the log file extension.
    matchpolicy : str, optional
        How to handle several logs matching one run.  Default is ``first``.
    mapping : dict, optional
        Explicit fMRI to log mapping, for the ``mapping`` policy.

    Returns
    -------
    iterator of Run
        One per fMRI file, session by session, with the volume loaded.

    Raises
    ------
    MissingInputError, MissingLogfileError, AmbiguousLogfileError, FolderStructureError
        Raised by the call itself, before any volume is loaded, if any run of
        any session cannot be paired with its log.
    """
    if indir is None:
        raise MissingInputError("BIDS scanning use-case requires input directory.")
    phys_ext = getlogextension(vendor)

    subjectfolder = indir
    firstlevel = getfoldercontents(subjectfolder)
    if not any("ses" in x for x in firstlevel) and not any("func" in x for x in firstlevel):
        subjectfolder, firstlevel = _descendifnested(subjectfolder, firstlevel)

    sessions = _sessionfolders(subjectfolder, firstlevel)
    if len(sessions) == 0:
        if not os.path.isdir(os.path.join(subjectfolder, "func")):
            raise FolderStructureError("Invalid folder structure. Check BIDS specifications.")
        sessions = [""]
    LGR.info(f"subject folder {subjectfolder}: {len(sessions)} session(s)")

    pendingruns = []
    for thesession in sessions:
        funcfolder = os.path.join(subjectfolder, thesession, "func")
        funccontents = getfoldercontents(funcfolder)
        fmrifiles = [x for x in funccontents if pc_io.checkifnifti(x)]
        if len(fmrifiles) == 0:
            raise MissingInputError("Did not find any fMRI files in func directory.")
        for thefmrifile in fmrifiles:
            runid = getrunid(thefmrifile)
            candidates = [
                os.path.join(funcfolder, x)
                for x in funccontents
                if phys_ext != "" and x.endswith(phys_ext) and runid in x
            ]
            fmripath = os.path.join(funcfolder, thefmrifile)
            logfiles, cardiac, respiration = selectlogfiles(
                fmripath, candidates, matchpolicy=matchpolicy, mapping=mapping
            )
            pendingruns.append(
                PendingRun(
                    fmripath, logfiles, cardiac, respiration, getoutputdir(outdir, thefmrifile)
                )
            )
    if len(pendingruns) == 0:
        raise MissingInputError(f"Did not find any fMRI runs in {subjectfolder}.")
    LGR.info(f"found {len(pendingruns)} run(s), all with logs")
    return _loadruns(pendingruns)


def locatesinglerun(
    indir: Optional[str],
    outdir: str,
    vendor: str,
    matchpolicy: str = "first",
    mapping: Optional[Dict[str, Union[str, List[str]]]] = None,
) -> Iterator[Run]:
    """Find the one run in a folder holding a single fMRI file and its log."""
    if indir is None:
        raise MissingInputError("Single-run use-case requires input directory.")
    phys_ext = getlogextension(vendor)

    thefolder = indir
    contents = getfoldercontents(thefolder)
    if not any(pc_io.checkifnifti(x) for x in contents) and any(
        os.path.isdir(os.path.join(thefolder, x)) for x in contents
    ):
        thefolder, contents = _descendifnested(thefolder, contents)

    fmrifiles = [x for x in contents if pc_io.checkifnifti(x)]
    if len(fmrifiles) == 0:
        raise MissingInputError("Did not find any fMRI files in input directory.")
    elif len(fmrifiles) > 1:
        raise FolderStructureError("Too many ( > 1 ) fMRI files in input directory.")

    candidates = [
        os.path.join(thefolder, x) for x in contents if phys_ext != "" and x.endswith(phys_ext)
    ]
    fmripath = os.path.join(thefolder, fmrifiles[0])
    logfiles, cardiac, respiration = selectlogfiles(
        fmripath, candidates, matchpolicy=matchpolicy, mapping=mapping
    )
    return _loadruns(
        [PendingRun(fmripath, logfiles, cardiac, respiration, getoutputdir(outdir, fmrifiles[0]))]
    )


def locatemanualrun(
    fmrifile: Optional[str],
    outdir: str,
    cardiac: Optional[str] = None,
    respiration: Optional[str] = None,
    cardiacrespiration: Optional[str] = None,
) -> Iterator[Run]:
    """
    The run given explicitly on the command line.

    If neither ``cardiac`` nor ``respiration`` is an existing file, the combined
    ``cardiacrespiration`` log is used for both.  Results go directly in ``outdir``.
    """
    if fmrifile is None:
        raise MissingInputError("Manual input: No fMRI file was input.")

    thelogs = {}
    for thekind, thelog in (("cardiac", cardiac), ("respiration", respiration)):
        if thelog is not None and os.path.isfile(thelog):
            thelogs[thekind] = thelog
        elif thelog is not None:
            LGR.warning(f"{thekind} log {thelog} does not exist - ignoring it")
            thelogs[thekind] = None
        else:
            thelogs[thekind] = None
    if thelogs["cardiac"] is None and thelogs["respiration"] is None:
        if cardiacrespiration is None or not os.path.isfile(cardiacrespiration):
            raise MissingLogfileError(
                "Manual input: Log file(s) are invalid. Input at least one logfile."
            )
        LGR.info(f"using combined log {cardiacrespiration} for cardiac and respiration")
        thelogs["cardiac"] = cardiacrespiration
        thelogs["respiration"] = cardiacrespiration

    logfiles = tuple(dict.fromkeys(x for x in thelogs.values() if x is not None))
    return _loadruns(
        [PendingRun(fmrifile, logfiles, thelogs["cardiac"], thelogs["respiration"], outdir)]
    )


USECASES = {
    "bids_subject_folder": locatebidsruns,
    "single_run_folder": locatesinglerun,
    "manual_input": locatemanualrun,
}


def readmapping(mappingfile: str) -> Dict[str, Union[str, List[str]]]:
    """Read an fMRI to log file mapping from a json file."""
    themapping = pc_io.readdictfromjson(mappingfile)
    for thekey, thevalue in themapping.items():
        if not (
            isinstance(thevalue, str)
            or (isinstance(thevalue, list) and all(isinstance(x, str) for x in thevalue))
        ):
            raise ValueError(f"{mappingfile}: bad entry for {thekey}")
    return themapping


def locateruns(
    usecase: str,
    outdir: str,
    config: Any,
    matchpolicy: str = "first",
    mapping: Union[str, Dict[str, Union[str, List[str]]], None] = None,
) -> Iterator[Run]:
    """
    Find the runs for a use case.

    Parameters
    ----------
    usecase : str
        ``bids_subject_folder``, ``single_run_folder`` or ``manual_input``.
    outdir : str
        The output directory.
    config : PhysioConfig
        Supplies the input directory, manual file names and vendor.
    matchpolicy : str, optional
        Log matching policy for the scanning use cases.  Default is ``first``.
    mapping : str or dict, optional
        Explicit mapping (or a json file holding it) for the ``mapping`` policy.

    Returns
    -------
    iterator of Run

    Raises
    ------
    ValueError
        If the use case or match policy is unknown.
    """
    if usecase not in USECASES:
        raise ValueError("No valid use-case selected.")
    if matchpolicy not in MATCH_POLICIES:
        raise ValueError(f"unknown match policy {matchpolicy}")
    if isinstance(mapping, str):
        mapping = readmapping(mapping)
    if matchpolicy == "mapping" and mapping is None:
        raise ValueError("the mapping match policy needs a mapping file")

    if usecase == "manual_input":
        return locatemanualrun(
            config.fmri_file,
            outdir,
            cardiac=config.log_files.cardiac,
            respiration=config.log_files.respiration,
            cardiacrespiration=config.log_files.cardiac_respiration,
        )
    return USECASES[usecase](
        config.in_dir,
        outdir,
        config.log_files.vendor,
        matchpolicy=matchpolicy,
        mapping=mapping,
    )
