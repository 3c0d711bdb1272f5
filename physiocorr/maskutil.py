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

import numpy as np
from numpy.typing import ArrayLike, NDArray

LGR = logging.getLogger("GENERAL")

DEFAULT_MASKTHRESH = 0.8


def makegrandmeanmask(fmridata: ArrayLike, threshfrac: float = DEFAULT_MASKTHRESH) -> NDArray:
    """Quick and dirty whole brain mask from the temporal mean of fMRI data.

    Voxels whose temporal mean is below ``threshfrac`` times the grand mean (the
    mean of the temporal mean map) are set to 0, all others to 1.  This is a
    crude intensity threshold, not a real brain extraction.

    Parameters
    ----------
    fmridata : array_like
        4D data, time on the last axis.
    threshfrac : float, optional
        Fraction of the grand mean below which a voxel is excluded.  Default is 0.8.

    Returns
    -------
    NDArray
        float64 mask with the spatial shape of the data.

    Examples
    --------
    >>> data = np.ones((2, 2, 1, 5))
    >>> data[0, 0, 0, :] = 0.1
    >>> makegrandmeanmask(data)[:, :, 0]
    array([[0., 1.],
           [1., 1.]])
    """
    LGR.info("Making mask")
    meanmap = np.mean(fmridata, axis=-1)
    grandmean = np.mean(meanmap)
    themask = np.ones_like(meanmap, dtype=np.float64)
    themask[meanmap < threshfrac * grandmean] = 0.0
    LGR.info(f"{int(np.sum(themask))} of {themask.size} voxels are in the mask")
    return themask


def applymask(themap: NDArray, themask: NDArray) -> NDArray:
    """Zero out the voxels of a map that are outside a mask.

    Parameters
    ----------
    themap : NDArray
        The map to mask.
    themask : NDArray
        Mask of the same shape; nonzero voxels are kept.

    Returns
    -------
    NDArray
        The masked map.  Voxels outside the mask are 0, including ones that
        were not finite in ``themap``.
    """
    if np.shape(themap) != np.shape(themask):
        raise ValueError(
            f"map shape {np.shape(themap)} does not match mask shape {np.shape(themask)}"
        )
    return np.where(themask != 0, themap, 0.0)
