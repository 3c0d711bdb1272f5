#!/usr/bin/env python
# -*- coding: latin-1 -*-
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
Utility functions for testing physiocorr.
"""
import nibabel as nib
import numpy as np


def mse(ndarr1, ndarr2):
    """
    Compute mean-squared error.
    """
    return np.mean(np.square(ndarr2 - ndarr1))


def writefmri(filename, thedata, dtype=np.float32):
    """
    Write a small nifti file for tests, with an identity affine.

    Returns the file name.
    """
    theimage = nib.Nifti1Image(np.asarray(thedata).astype(dtype), np.eye(4))
    theimage.header.set_data_dtype(dtype)
    theimage.header.set_xyzt_units("mm", "sec")
    theimage.to_filename(str(filename))
    return str(filename)


def randomfmri(shape=(3, 3, 2, 20), seed=0, mean=1000.0):
    """Random positive fMRI-like data."""
    rng = np.random.default_rng(seed)
    return mean + rng.standard_normal(shape)


def touch(filename):
    with open(filename, "w") as thefile:
        thefile.write("")
    return str(filename)
