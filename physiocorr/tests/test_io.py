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
import os

import numpy as np
import pandas as pd
import pytest

import physiocorr.io as pc_io
from physiocorr.tests.utils import mse, randomfmri, writefmri


def checknames(debug=False):
    assert pc_io.checkifnifti("test.nii")
    assert pc_io.checkifnifti("test.nii.gz")
    assert not pc_io.checkifnifti("test.txt")
    assert not pc_io.checkifnifti("sub-01_physio.tsv.gz")

    assert pc_io.getniftiroot("test.nii") == "test"
    assert pc_io.getniftiroot("test.nii.gz") == "test"
    assert pc_io.getniftiroot("test.txt") == "test.txt"


def checkloadfmri(testtemproot, debug=False):
    thedata = np.round(randomfmri(shape=(4, 3, 2, 7)))
    thefile = writefmri(os.path.join(testtemproot, "sub-01_bold.nii.gz"), thedata, dtype=np.int16)

    fmridata, header, numslices, numscans = pc_io.loadfmri(thefile)
    if debug:
        print(f"{fmridata.shape=}, {header.get_data_dtype()=}")
    assert fmridata.dtype == np.float64
    assert fmridata.shape == (4, 3, 2, 7)
    assert numslices == 2
    assert numscans == 7
    assert header.get_data_dtype() == np.int16
    assert mse(fmridata, thedata) < 1e-6

    # readfromnifti finds the file without its extension
    nim, nim_data, nim_hdr, thedims, thesizes = pc_io.readfromnifti(
        os.path.join(testtemproot, "sub-01_bold")
    )
    assert thedims[4] == 7

    # not 4D
    threedfile = writefmri(os.path.join(testtemproot, "anat.nii.gz"), thedata[:, :, :, 0])
    with pytest.raises(ValueError):
        pc_io.loadfmri(threedfile)

    # missing
    with pytest.raises(FileNotFoundError):
        pc_io.loadfmri(os.path.join(testtemproot, "nothere.nii.gz"))

    # corrupt
    badfile = os.path.join(testtemproot, "bad.nii.gz")
    with open(badfile, "w") as thefile:
        thefile.write("this is not a nifti file")
    with pytest.raises(Exception):
        pc_io.loadfmri(badfile)


def checksavetonifti(testtemproot, debug=False):
    thedata = randomfmri(shape=(4, 3, 2, 7))
    thefile = writefmri(os.path.join(testtemproot, "run_bold.nii.gz"), thedata)
    fmridata, header, numslices, numscans = pc_io.loadfmri(thefile)

    # a 3D float64 map written with the 4D file's geometry
    themap = np.mean(fmridata, axis=3)
    outname = pc_io.savetonifti(themap, header, os.path.join(testtemproot, "themap"))
    assert outname == os.path.join(testtemproot, "themap.nii.gz")
    nim, mapdata, maphdr, mapdims, mapsizes = pc_io.readfromnifti(outname)
    assert mapdata.shape == (4, 3, 2)
    assert maphdr.get_data_dtype() == np.float64
    assert np.allclose(nim.affine, np.eye(4))
    assert mse(mapdata, themap) < 1e-10

    # the input header is not changed
    assert header.get_data_dtype() == np.float32

    # integer data
    intname = pc_io.savetonifti(
        np.round(fmridata).astype(np.int16), header, os.path.join(testtemproot, "theints")
    )
    nim, intdata, inthdr, intdims, intsizes = pc_io.readfromnifti(intname)
    assert inthdr.get_data_dtype() == np.int16
    assert intdata.shape == (4, 3, 2, 7)

    # small float values stored in int16 through a new scale factor
    smallvals = np.linspace(0.0, 3.0, 4 * 3 * 2 * 7).reshape((4, 3, 2, 7))
    scaledname = pc_io.savetonifti(
        smallvals, header, os.path.join(testtemproot, "thescaled"), ondiskdtype=np.int16
    )
    nim, scaleddata, scaledhdr, scaleddims, scaledsizes = pc_io.readfromnifti(scaledname)
    assert scaledhdr.get_data_dtype() == np.int16
    assert np.max(np.fabs(scaleddata - smallvals)) < 1e-3

    # a scaled header is written back unscaled when no on-disk type is given
    rewrittenname = pc_io.savetonifti(
        scaleddata.astype(np.float32), scaledhdr, os.path.join(testtemproot, "therewritten")
    )
    nim, rewrittendata, rewrittenhdr, rewrittendims, rewrittensizes = pc_io.readfromnifti(
        rewrittenname
    )
    assert rewrittenhdr.get_slope_inter() in [(1.0, 0.0), (None, None)]
    assert np.allclose(rewrittendata, scaleddata, atol=1e-5)

    # no header
    nohdrname = pc_io.savetonifti(themap, None, os.path.join(testtemproot, "nohdr"))
    assert os.path.isfile(nohdrname)

    with pytest.raises(TypeError):
        pc_io.savetonifti(themap.astype(np.float16), header, os.path.join(testtemproot, "bad"))


def checktextfiles(testtemproot, debug=False):
    # json
    thedict = {
        "anint": np.int64(3),
        "afloat": np.float64(0.5),
        "anarray": np.array([1.0, 2.0]),
        "nested": {"atuple": (1, 2), "astring": "yes"},
    }
    jsonfile = os.path.join(testtemproot, "thedict.json")
    pc_io.writedicttojson(thedict, jsonfile)
    readdict = pc_io.readdictfromjson(jsonfile)
    if debug:
        print(readdict)
    assert readdict["anint"] == 3
    assert readdict["afloat"] == 0.5
    assert readdict["anarray"] == [1.0, 2.0]
    assert readdict["nested"] == {"atuple": [1, 2], "astring": "yes"}
    with pytest.raises(FileNotFoundError):
        pc_io.readdictfromjson(os.path.join(testtemproot, "nothere.json"))

    # vectors, with and without a header
    thevecs = np.array([[1.0, 2.0, 3.0], [4.0, 5.0, 6.0]])
    vecfile = os.path.join(testtemproot, "thevecs.txt")
    pc_io.writenpvecs(thevecs, vecfile)
    assert np.allclose(pc_io.readvecs(vecfile), thevecs)
    headerfile = os.path.join(testtemproot, "theheadedvecs.txt")
    pc_io.writenpvecs(thevecs, headerfile, headers=["cardiac", "resp"])
    assert np.allclose(pc_io.readvecs(headerfile), thevecs)

    raggedfile = os.path.join(testtemproot, "ragged.txt")
    pc_io.writevec(["1 2", "3 4", "5"], raggedfile)
    with pytest.raises(ValueError):
        pc_io.readvecs(raggedfile)

    # dataframes
    tsvfile = os.path.join(testtemproot, "thetable.tsv")
    pc_io.writedataframetotsv(pd.DataFrame({"runid": ["a", "b"], "value": [1.0, np.nan]}), tsvfile)
    with open(tsvfile, "r") as thefile:
        lines = thefile.read().splitlines()
    assert lines == ["runid\tvalue", "a\t1.0", "b\tn/a"]


def test_io(tmp_path, debug=False):
    testtemproot = str(tmp_path)
    checknames(debug=debug)
    checkloadfmri(testtemproot, debug=debug)
    checksavetonifti(testtemproot, debug=debug)
    checktextfiles(testtemproot, debug=debug)
