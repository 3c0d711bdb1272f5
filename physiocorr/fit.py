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
from dataclasses import dataclass
from typing import Any

import numpy as np
from numpy.typing import NDArray
from scipy import linalg

LGR = logging.getLogger("GENERAL")

# intercept, linear trend, quadratic trend
NUMNUISANCECOLS = 3


class RegressorMismatchError(ValueError):
    """The regressor matrix does not have one row per fMRI frame."""


@dataclass
class CorrectionResult:
    """
    Results from physiological noise correction.

    This dataclass supports tuple unpacking as ``corrected, pctvarreduced``.

    Attributes
    ----------
    corrected : NDArray
        Corrected data, float64, same shape as the input volume.
    pctvarreduced : NDArray
        Fractional variance reduction per voxel, float64, shape (x, y, slice).
    betas : NDArray
        Fit coefficients, shape (3 + numregressors, numvoxels).  Rows are the
        intercept, linear trend, quadratic trend, then the regressors.
    """

    corrected: NDArray
    pctvarreduced: NDArray
    betas: NDArray

    def __iter__(self):
        return iter((self.corrected, self.pctvarreduced))


# --------------------------- Design matrix functions -------------------------------------------
def zscorecolumns(thematrix: NDArray[np.floating[Any]]) -> NDArray[np.floating[Any]]:
    """
    Normalize every column of a matrix to zero mean and unit variance.

    Parameters
    ----------
    thematrix : NDArray
        2D array, (numpoints, numcolumns).

    Returns
    -------
    NDArray
        The z-scored matrix, float64.

    Notes
    -----
    The sample standard deviation (ddof=1) is used.  Columns with zero variance
    are only demeaned, so they come out as all zeros rather than NaN.

    Examples
    --------
    >>> zscorecolumns(np.array([[1.0, 5.0], [2.0, 5.0], [3.0, 5.0]]))
    array([[-1.,  0.],
           [ 0.,  0.],
           [ 1.,  0.]])
    """
    thematrix = np.asarray(thematrix, dtype=np.float64)
    themeans = np.mean(thematrix, axis=0)
    thestds = np.std(thematrix, axis=0, ddof=1)
    thestds = np.where(thestds == 0.0, 1.0, thestds)
    return (thematrix - themeans) / thestds


def makedesignmatrix(regressors: NDArray[np.floating[Any]]) -> NDArray[np.floating[Any]]:
    """
    Build the design matrix used for physiological noise correction.

    Parameters
    ----------
    regressors : NDArray
        Regressor matrix, (numframes, numregressors).  A 1D array is treated as
        a single regressor.

    Returns
    -------
    NDArray
        (numframes, 3 + numregressors) matrix.  Column 0 is the intercept, columns
        1 and 2 are the linear and quadratic time trends, and the rest are the
        regressors.  Every column except the intercept is z-scored.
    """
    regressors = np.asarray(regressors, dtype=np.float64)
    if regressors.ndim == 1:
        regressors = regressors.reshape((-1, 1))
    numframes = regressors.shape[0]
    t = np.arange(1, numframes + 1, dtype=np.float64).reshape((-1, 1))
    trendsandregressors = np.hstack((t, t**2, regressors))
    return np.hstack((np.ones((numframes, 1), dtype=np.float64), zscorecolumns(trendsandregressors)))


def fitbetas(
    designmatrix: NDArray[np.floating[Any]], datamatrix: NDArray[np.floating[Any]]
) -> NDArray[np.floating[Any]]:
    """
    Least squares fit of every column of the data matrix to the design matrix.

    Parameters
    ----------
    designmatrix : NDArray
        (numframes, numcolumns) design matrix.
    datamatrix : NDArray
        (numframes, numvoxels) data, one voxel timecourse per column.

    Returns
    -------
    NDArray
        (numcolumns, numvoxels) fit coefficients.

    Notes
    -----
    The fit is ``pinv(designmatrix) @ datamatrix``, computed from an SVD of the
    design matrix.  When the design matrix has full column rank this is the
    ordinary least squares solution.

    When it is rank deficient (a regressor collinear with the trends, or
    constant), every solution gives the same fitted values, and the choice
    between them decides what gets removed.  The pseudoinverse solution is
    shifted along the null space of the design matrix to the solution whose
    intercept and trend coefficients have the smallest norm, so variance that
    cannot be told apart is attributed to the regressors.
    """
    designmatrix = np.asarray(designmatrix, dtype=np.float64)
    U, s, Vt = linalg.svd(designmatrix, full_matrices=False)
    tol = s.max() * max(designmatrix.shape) * np.finfo(np.float64).eps
    rank = int(np.sum(s > tol))
    betas = Vt[:rank, :].T @ ((U[:, :rank].T @ datamatrix) / s[:rank, None])
    if rank < designmatrix.shape[1]:
        LGR.warning(
            f"design matrix is rank deficient ({rank} < {designmatrix.shape[1]} columns)"
        )
        nullspace = linalg.null_space(designmatrix, rcond=tol / s.max())
        nuisancerows = min(NUMNUISANCECOLS, designmatrix.shape[1])
        shift = linalg.lstsq(nullspace[:nuisancerows, :], -betas[:nuisancerows, :])[0]
        betas = betas + nullspace @ shift
    return betas


# --------------------------- Correction functions ----------------------------------------------
def variancereduction(
    rawdata: NDArray[np.floating[Any]], correcteddata: NDArray[np.floating[Any]]
) -> NDArray[np.floating[Any]]:
    """
    Fractional reduction in temporal variance at every voxel.

    Parameters
    ----------
    rawdata : NDArray
        Uncorrected data, time on the last axis.
    correcteddata : NDArray
        Corrected data, same shape as ``rawdata``.

    Returns
    -------
    NDArray
        ``(var_raw - var_corrected) / var_raw`` with the time axis removed.

    Notes
    -----
    Population variance (denominator = number of frames) is used.  Voxels with
    zero raw variance give a non-finite value; they are counted in the log but
    left as they are.
    """
    var_raw = np.var(rawdata, axis=-1)
    var_corrected = np.var(correcteddata, axis=-1)
    with np.errstate(divide="ignore", invalid="ignore"):
        pctvarreduced = (var_raw - var_corrected) / var_raw
    numbad = np.sum(~np.isfinite(pctvarreduced))
    if numbad > 0:
        LGR.warning(f"{numbad} voxels have zero variance - variance reduction is undefined there")
    return pctvarreduced


def correctfmri(
    fmridata: NDArray[np.floating[Any]],
    regressors: NDArray[np.floating[Any]],
    debug: bool = False,
) -> CorrectionResult:
    """
    Regress physiological noise regressors out of every voxel of an fMRI volume.

    Parameters
    ----------
    fmridata : NDArray
        4D data, (x, y, slice, frame).  Any numeric type; all arithmetic is done
        in float64.
    regressors : NDArray
        (frame, numregressors) regressor matrix.  A 1D array is a single regressor.
    debug : bool, optional
        Print shapes as the calculation proceeds. Default is False.

    Returns
    -------
    CorrectionResult
        Corrected 4D data, the 3D map of fractional variance reduction, and the betas.

    Raises
    ------
    RegressorMismatchError
        If the number of regressor rows is not the number of frames.
    ValueError
        If ``fmridata`` is not 4D.

    Notes
    -----
    The design matrix holds an intercept, linear and quadratic time trends, and
    the regressors (everything but the intercept z-scored).  All columns are fit,
    but only the regressor part of the fit is subtracted; the intercept and trend
    columns keep trend variance out of the regressor betas and are left in the data.

    Examples
    --------
    >>> corrected, pctvarreduced = correctfmri(fmridata, regressors)
    """
    fmridata = np.asarray(fmridata, dtype=np.float64)
    if fmridata.ndim != 4:
        raise ValueError(f"fMRI data must be 4D (x, y, slice, frame), got shape {fmridata.shape}")
    xsize, ysize, numslices, numframes = fmridata.shape
    regressors = np.asarray(regressors, dtype=np.float64)
    if regressors.ndim == 1:
        regressors = regressors.reshape((-1, 1))
    if regressors.ndim != 2 or regressors.shape[0] != numframes:
        raise RegressorMismatchError(
            f"regressor matrix has shape {regressors.shape} but the fMRI data has {numframes} frames"
        )
    numvoxels = xsize * ysize * numslices

    LGR.info("Arranging data")
    datamatrix = fmridata.reshape((numvoxels, numframes)).T
    if debug:
        print(f"correctfmri: {fmridata.shape=}, {datamatrix.shape=}, {regressors.shape=}")

    LGR.info("Setting up design matrix")
    designmatrix = makedesignmatrix(regressors)

    LGR.info("Regressing")
    betas = fitbetas(designmatrix, datamatrix)
    if debug:
        print(f"correctfmri: {designmatrix.shape=}, {betas.shape=}")

    LGR.info("Correcting")
    noisefit = designmatrix[:, NUMNUISANCECOLS:] @ betas[NUMNUISANCECOLS:, :]
    correctedmatrix = datamatrix - noisefit
    noisefit = None
    corrected = correctedmatrix.T.reshape((xsize, ysize, numslices, numframes))

    LGR.info("Computing fractional variance reduced")
    pctvarreduced = variancereduction(fmridata, corrected)
    return CorrectionResult(corrected=corrected, pctvarreduced=pctvarreduced, betas=betas)


def castto(thearray: NDArray[np.floating[Any]], thedtype: np.dtype) -> NDArray:
    """
    Convert floating point data back to a storage type.

    Parameters
    ----------
    thearray : NDArray
        Floating point data.
    thedtype : np.dtype
        Target type, usually ``header.get_data_dtype()``.

    Returns
    -------
    NDArray
        The converted array.  Integer targets are rounded to the nearest integer
        and saturated at the type limits; NaN becomes 0.  Floating point targets
        are a straight conversion.

    Examples
    --------
    >>> castto(np.array([-3.6, 1.4, 300.0, np.nan]), np.dtype(np.uint8))
    array([  0,   1, 255,   0], dtype=uint8)
    """
    thedtype = np.dtype(thedtype).newbyteorder("=")
    if np.issubdtype(thedtype, np.integer):
        typeinfo = np.iinfo(thedtype)
        rounded = np.rint(np.nan_to_num(thearray, nan=0.0, posinf=typeinfo.max, neginf=typeinfo.min))
        return np.clip(rounded, typeinfo.min, typeinfo.max).astype(thedtype)
    else:
        return np.asarray(thearray).astype(thedtype)


def maxfinite(themap: NDArray) -> float:
    """Largest finite value in an array, or NaN if there are none."""
    finitevals = themap[np.isfinite(themap)]
    if len(finitevals) == 0:
        return np.nan
    return float(np.max(finitevals))
