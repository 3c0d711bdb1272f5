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
import json
import logging
import os
from typing import Any, Dict, List, Optional, Tuple

import nibabel as nib
import numpy as np
import pandas as pd
from numpy.typing import NDArray

LGR = logging.getLogger("GENERAL")

# numpy type -> (nifti datatype code, bitpix)
NIFTI_DATATYPES = {
    np.dtype(np.uint8): (2, 8),
    np.dtype(np.int16): (4, 16),
    np.dtype(np.int32): (8, 32),
    np.dtype(np.float32): (16, 32),
    np.dtype(np.complex64): (32, 64),
    np.dtype(np.float64): (64, 64),
    np.dtype(np.int8): (256, 8),
    np.dtype(np.uint16): (512, 16),
    np.dtype(np.uint32): (768, 32),
    np.dtype(np.int64): (1024, 64),
    np.dtype(np.uint64): (1280, 64),
    np.dtype(np.complex128): (1792, 128),
}


# ---------------------------------------- NIFTI file manipulation ---------------------------
def readfromnifti(inputfile: str) -> Tuple[Any, NDArray, Any, NDArray, NDArray]:
    """
    Open a nifti file and read in the data and the parts of the header we use.

    Parameters
    ----------
    inputfile : str
        The name of the nifti file, with or without the .nii or .nii.gz extension.

    Returns
    -------
    nim : nifti image
    nim_data : NDArray
        The image data, as returned by ``get_fdata``.
    nim_hdr : nifti header
        A copy of the image header.
    thedims : NDArray
        The ``dim`` field of the header.
    thesizes : NDArray
        The ``pixdim`` field of the header.
    """
    if os.path.isfile(inputfile):
        inputfilename = inputfile
    elif os.path.isfile(f"{inputfile}.nii.gz"):
        inputfilename = f"{inputfile}.nii.gz"
    elif os.path.isfile(f"{inputfile}.nii"):
        inputfilename = f"{inputfile}.nii"
    else:
        raise FileNotFoundError(f"nifti file {inputfile} does not exist")
    nim = nib.load(inputfilename)
    nim_data = nim.get_fdata()
    nim_hdr = nim.header.copy()
    return nim, nim_data, nim_hdr, nim_hdr["dim"].copy(), nim_hdr["pixdim"].copy()


def loadfmri(fmrifile: str) -> Tuple[NDArray, Any, int, int]:
    """
    Read a 4D fMRI file and pull out the slice and frame counts.

    Parameters
    ----------
    fmrifile : str
        Path to a 4D nifti file.

    Returns
    -------
    fmridata : NDArray
        The image data as float64, indexed (x, y, slice, frame).
    header : nifti header
        A copy of the file header.  ``header.get_data_dtype()`` is the on-disk type.
    numslices : int
        Size of the third array dimension.
    numscans : int
        Size of the fourth array dimension.

    Raises
    ------
    ValueError
        If the file is readable but is not four dimensional.

    Notes
    -----
    Any failure to read the file is logged together with the offending path and
    then re-raised unchanged.
    """
    try:
        nim, fmridata, header, thedims, thesizes = readfromnifti(str(fmrifile))
    except Exception:
        LGR.error(
            "Problem reading fMRI file. Please verify that file is uncorrupted and in correct format."
        )
        LGR.error(f"\t{fmrifile}")
        raise
    if fmridata.ndim != 4:
        raise ValueError(
            f"fMRI file {fmrifile} has {fmridata.ndim} dimensions - a 4D (x, y, slice, frame) file is required"
        )
    numslices = fmridata.shape[2]
    numscans = fmridata.shape[3]
    LGR.debug(f"loaded {fmrifile}: shape {fmridata.shape}, on-disk type {header.get_data_dtype()}")
    return np.asarray(fmridata, dtype=np.float64), header, numslices, numscans


def savetonifti(
    thearray: NDArray,
    theheader: Optional[Any],
    thename: str,
    ondiskdtype: Optional[np.dtype] = None,
    debug: bool = False,
) -> str:
    """
    Save a data array out to a nifti file

    Parameters
    ----------
    thearray : NDArray
        The data array to save.
    theheader : nifti header or None
        A valid nifti header to take geometry from.  It is copied, never modified.
        If None, a header with an identity affine is made.
    thename : str
        The name of the nifti file to save, without extension.  ".nii.gz" is
        appended (".nii" for nifti2 headers).
    ondiskdtype : np.dtype, optional
        If None (the default), the nifti datatype is taken from the array dtype
        and the values are stored unscaled (scl_slope 1, scl_inter 0).  Otherwise
        the file is written with this datatype and nibabel picks a new
        scl_slope/scl_inter that maps the array's range onto it.
    debug : bool, optional
        Enable debug output. Default is False

    Returns
    -------
    str
        The full name of the file written.

    Raises
    ------
    TypeError
        If the array type has no nifti equivalent.
    """
    if theheader is None:
        theheader = nib.Nifti1Header()
        theheader.set_qform(np.eye(4), code=1)
        theheader.set_sform(np.eye(4), code=1)
    else:
        theheader = theheader.copy()
    outputaffine = theheader.get_best_affine()
    qaffine, qcode = theheader.get_qform(coded=True)
    saffine, scode = theheader.get_sform(coded=True)
    if ondiskdtype is None:
        thedtype = thearray.dtype.newbyteorder("=")
        theheader.set_slope_inter(1.0, 0.0)
    else:
        thedtype = np.dtype(ondiskdtype).newbyteorder("=")
        theheader.set_slope_inter(None, None)
    try:
        thedatatypecode, thebitpix = NIFTI_DATATYPES[thedtype]
    except KeyError:
        raise TypeError(f"type {thedtype} is not legal")
    theheader["datatype"] = thedatatypecode
    theheader["bitpix"] = thebitpix
    if debug:
        print(f"savetonifti: {thearray.dtype=}, {thedatatypecode=}, {thename=}")

    if theheader["magic"] == b"n+2" or theheader["magic"] == "n+2":
        output_nifti = nib.Nifti2Image(thearray, outputaffine, header=theheader)
        suffix = ".nii"
    else:
        output_nifti = nib.Nifti1Image(thearray, outputaffine, header=theheader)
        suffix = ".nii.gz"
    output_nifti.set_qform(qaffine, code=int(qcode))
    output_nifti.set_sform(saffine, code=int(scode))

    output_nifti.to_filename(thename + suffix)
    return thename + suffix


def checkifnifti(filename: str) -> bool:
    """
    Check to see if a file name is a valid nifti name.

    Examples
    --------
    >>> checkifnifti("sub-01_bold.nii.gz")
    True
    >>> checkifnifti("sub-01_physio.tsv.gz")
    False
    """
    return filename.endswith(".nii") or filename.endswith(".nii.gz")


def getniftiroot(filename: str) -> str:
    """
    Strip a nifti filename down to the root with no extensions.

    Examples
    --------
    >>> getniftiroot("sub-01_task-rest_bold.nii")
    'sub-01_task-rest_bold'

    >>> getniftiroot("data.txt")
    'data.txt'
    """
    for theext in (".nii.gz", ".nii"):
        if filename.endswith(theext):
            return filename[: -len(theext)]
    return filename


# --------------------------- text and json file manipulation ----------------------------------
def writedicttojson(thedict: Dict[str, Any], thefilename: str) -> None:
    """
    Write key-value pairs to a json file, converting numpy types along the way.

    Nested dictionaries, lists and tuples are converted recursively.
    """

    def _tojson(thevalue):
        if isinstance(thevalue, dict):
            return {key: _tojson(thevalue[key]) for key in thevalue}
        elif isinstance(thevalue, (list, tuple)):
            return [_tojson(x) for x in thevalue]
        elif isinstance(thevalue, np.integer):
            return int(thevalue)
        elif isinstance(thevalue, np.floating):
            return float(thevalue)
        elif isinstance(thevalue, np.ndarray):
            return thevalue.tolist()
        else:
            return thevalue

    with open(thefilename, "wb") as fp:
        fp.write(
            json.dumps(_tojson(thedict), sort_keys=True, indent=4, separators=(",", ":")).encode(
                "utf-8"
            )
        )


def readdictfromjson(inputfilename: str) -> Dict[str, Any]:
    """
    Read key value pairs out of a json file.

    The ``.json`` extension may be left off ``inputfilename``.  A missing file
    raises FileNotFoundError.
    """
    thefileroot, theext = os.path.splitext(inputfilename)
    if not os.path.exists(thefileroot + ".json"):
        raise FileNotFoundError(f"json file {thefileroot}.json does not exist")
    with open(thefileroot + ".json", "r") as json_data:
        return json.load(json_data)


def readvecs(inputfilename: str, numskip: int = 0, debug: bool = False) -> NDArray:
    """
    Read vectors from a whitespace delimited text file.

    Parameters
    ----------
    inputfilename : str
        The name of the text file to read data from.
    numskip : int, optional
        Number of lines to skip at the beginning of the file. If 0, the first
        line is skipped if its first token is not a number. Default is 0.
    debug : bool, optional
        Print debug information. Default is False.

    Returns
    -------
    NDArray
        A float64 array with one row per column of the file (the file contents,
        transposed).  An empty file gives a (0, 0) array.

    Raises
    ------
    ValueError
        If the rows of the file have differing numbers of columns.

    Examples
    --------
    >>> data = readvecs('multiple_regressors.txt')
    >>> data.shape
    (18, 240)
    """
    with open(inputfilename, "r") as thefile:
        lines = [line.split() for line in thefile if len(line.split()) > 0]
    if debug:
        print(f"readvecs: {inputfilename=}, {numskip=}, {len(lines)} nonblank lines")
    if len(lines) == 0:
        return np.zeros((0, 0), dtype=np.float64)
    if numskip == 0:
        try:
            float(lines[0][0])
        except ValueError:
            numskip = 1
    lines = lines[numskip:]
    numvecs = len(lines[0]) if len(lines) > 0 else 0
    for linenum, thetokens in enumerate(lines):
        if len(thetokens) != numvecs:
            raise ValueError(
                f"{inputfilename}: line {linenum + numskip + 1} has {len(thetokens)} columns, expected {numvecs}"
            )
    return np.transpose(np.asarray(lines, dtype=np.float64).reshape((len(lines), numvecs)))


def writevec(thevec: List[Any], outputfile: str) -> None:
    """Write a vector (or a list of strings) out to a text file, one item per line."""
    with open(outputfile, "w") as FILE:
        for i in thevec:
            FILE.writelines(str(i) + "\n")


def writenpvecs(thevecs: NDArray, outputfile: str, headers: Optional[List[str]] = None) -> None:
    """
    Write out a one or two dimensional numpy array to a tab separated text file.

    Each row of a 2D ``thevecs`` is written as a column of the output file, so
    that an array read back with ``readvecs`` comes out the same.  A 1D array is
    written as a single column.

    Parameters
    ----------
    thevecs : NDArray
        A 1D or 2D array.
    outputfile : str
        The path to the output file.
    headers : list of str, optional
        Column headers to write as the first line.
    """
    thevecs = np.asarray(thevecs)
    if thevecs.ndim == 1:
        thevecs = thevecs.reshape((1, -1))
    if headers is not None and len(headers) != thevecs.shape[0]:
        raise ValueError("number of header lines must equal the number of data columns")
    with open(outputfile, "w") as FILE:
        if headers is not None:
            FILE.writelines("\t".join(headers) + "\n")
        for i in range(thevecs.shape[1]):
            FILE.writelines("\t".join(thevecs[:, i].astype(str).tolist()) + "\n")


def writedataframetotsv(thedataframe: pd.DataFrame, outputfile: str) -> None:
    """Write a pandas dataframe out as a tab separated file with a header row; NaN is written as n/a."""
    thedataframe.to_csv(outputfile, sep="\t", index=False, na_rep="n/a")
