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
import os

import numpy as np
import pytest

import physiocorr.config as pc_config
import physiocorr.io as pc_io
import physiocorr.locate as pc_locate
from physiocorr.tests.utils import randomfmri, touch, writefmri


def _makefunc(funcdir, runids, logext=".log", numscans=8):
    os.makedirs(funcdir, exist_ok=True)
    for i, runid in enumerate(runids):
        writefmri(
            os.path.join(funcdir, f"{runid}_bold.nii.gz"),
            randomfmri(shape=(3, 3, 2 + i, numscans), seed=i),
        )
        touch(os.path.join(funcdir, f"{runid}_physio{logext}"))
    return funcdir


def _runpairs(theruns):
    return [
        (os.path.basename(x.fmrifile), os.path.basename(x.cardiac), os.path.basename(x.respiration))
        for x in theruns
    ]


class TestHelpers:
    def test_getlogextension(self):
        assert pc_locate.getlogextension("BIDS") == ".tsv.gz"
        assert pc_locate.getlogextension("Philips") == ".log"
        assert pc_locate.getlogextension("Biopac_Txt") == ".txt"
        assert pc_locate.getlogextension("Biopac_Mat") == ".mat"
        assert pc_locate.getlogextension("BrainProducts") == ".eeg"
        assert pc_locate.getlogextension("Siemens") == ""

    def test_getfoldercontents(self, tmp_path):
        for thename in ["b.log", "a.nii.gz", ".hidden", "c"]:
            touch(os.path.join(str(tmp_path), thename))
        assert pc_locate.getfoldercontents(str(tmp_path)) == ["a.nii.gz", "b.log", "c"]
        with pytest.raises(pc_locate.MissingInputError):
            pc_locate.getfoldercontents(os.path.join(str(tmp_path), "nothere"))

    def test_getrunid(self):
        assert pc_locate.getrunid("/a/b/sub-01_ses-1_task-rest_bold.nii") == "sub-01_ses-1_task-rest"
        assert pc_locate.getrunid("rest.nii.gz") == "rest"

    def test_getoutputdir(self):
        assert pc_locate.getoutputdir("/out", "/in/sub-01_task-rest_bold.nii.gz") == os.path.join(
            "/out", "sub-01_task-rest_bold_physio_results"
        )

    def test_error_taxonomy(self):
        assert issubclass(pc_locate.FolderStructureError, ValueError)
        assert issubclass(pc_locate.MissingInputError, FileNotFoundError)
        assert issubclass(pc_locate.MissingLogfileError, pc_locate.MissingInputError)
        assert issubclass(pc_locate.AmbiguousLogfileError, pc_locate.LocatorError)


class TestLocateBidsRuns:
    def test_no_sessions(self, tmp_path):
        subject = os.path.join(str(tmp_path), "sub-01")
        _makefunc(os.path.join(subject, "func"), ["sub-01_task-rest_run-2", "sub-01_task-rest_run-1"])
        outdir = os.path.join(str(tmp_path), "out")
        theruns = list(pc_locate.locatebidsruns(subject, outdir, "Philips"))
        assert _runpairs(theruns) == [
            (
                "sub-01_task-rest_run-1_bold.nii.gz",
                "sub-01_task-rest_run-1_physio.log",
                "sub-01_task-rest_run-1_physio.log",
            ),
            (
                "sub-01_task-rest_run-2_bold.nii.gz",
                "sub-01_task-rest_run-2_physio.log",
                "sub-01_task-rest_run-2_physio.log",
            ),
        ]
        first = theruns[0]
        assert first.runid == "sub-01_task-rest_run-1"
        assert first.outputdir == os.path.join(outdir, "sub-01_task-rest_run-1_bold_physio_results")
        assert first.cardiac == os.path.join(subject, "func", "sub-01_task-rest_run-1_physio.log")
        assert first.numslices == 3
        assert first.numscans == 8
        assert first.fmridata.shape == (3, 3, 3, 8)
        assert first.fmridata.dtype == np.float64
        assert first.header.get_data_dtype() == np.float32
        assert theruns[1].numslices == 2

    def test_sessions(self, tmp_path):
        subject = os.path.join(str(tmp_path), "sub-01")
        _makefunc(os.path.join(subject, "ses-2", "func"), ["sub-01_ses-2_task-rest"], logext=".tsv.gz")
        _makefunc(os.path.join(subject, "ses-1", "func"), ["sub-01_ses-1_task-rest"], logext=".tsv.gz")
        theruns = list(pc_locate.locatebidsruns(subject, str(tmp_path), "BIDS"))
        assert [x.runid for x in theruns] == ["sub-01_ses-1_task-rest", "sub-01_ses-2_task-rest"]
        assert theruns[1].cardiac == os.path.join(
            subject, "ses-2", "func", "sub-01_ses-2_task-rest_physio.tsv.gz"
        )

    def test_descends_into_single_subject(self, tmp_path):
        subject = os.path.join(str(tmp_path), "wrapper", "sub-01")
        _makefunc(os.path.join(subject, "func"), ["sub-01_task-rest"])
        theruns = list(
            pc_locate.locatebidsruns(os.path.join(str(tmp_path), "wrapper"), str(tmp_path), "Philips")
        )
        assert len(theruns) == 1
        assert theruns[0].fmrifile == os.path.join(subject, "func", "sub-01_task-rest_bold.nii.gz")
        assert theruns[0].cardiac == os.path.join(subject, "func", "sub-01_task-rest_physio.log")

    def test_two_subjects_is_a_structure_error(self, tmp_path):
        for thesubject in ["sub-01", "sub-02"]:
            _makefunc(os.path.join(str(tmp_path), "wrapper", thesubject, "func"), [thesubject])
        with pytest.raises(pc_locate.FolderStructureError):
            list(
                pc_locate.locatebidsruns(
                    os.path.join(str(tmp_path), "wrapper"), str(tmp_path), "Philips"
                )
            )

    def test_no_indir(self, tmp_path):
        with pytest.raises(pc_locate.MissingInputError, match="requires input directory"):
            list(pc_locate.locatebidsruns(None, str(tmp_path), "Philips"))

    def test_no_fmri_files(self, tmp_path):
        funcdir = os.path.join(str(tmp_path), "sub-01", "func")
        os.makedirs(funcdir)
        touch(os.path.join(funcdir, "sub-01_task-rest_physio.log"))
        with pytest.raises(pc_locate.MissingInputError, match="Did not find any fMRI files"):
            list(pc_locate.locatebidsruns(os.path.join(str(tmp_path), "sub-01"), str(tmp_path), "Philips"))

    def test_missing_log(self, tmp_path):
        subject = os.path.join(str(tmp_path), "sub-01")
        funcdir = _makefunc(os.path.join(subject, "func"), ["sub-01_task-rest"])
        os.remove(os.path.join(funcdir, "sub-01_task-rest_physio.log"))
        with pytest.raises(pc_locate.MissingLogfileError, match="sub-01_task-rest_bold.nii.gz"):
            list(pc_locate.locatebidsruns(subject, str(tmp_path), "Philips"))

    def test_unknown_vendor_matches_nothing(self, tmp_path):
        subject = os.path.join(str(tmp_path), "sub-01")
        _makefunc(os.path.join(subject, "func"), ["sub-01_task-rest"])
        with pytest.raises(pc_locate.MissingLogfileError):
            list(pc_locate.locatebidsruns(subject, str(tmp_path), "Siemens"))

    def test_sessions_tsv_beside_func(self, tmp_path):
        subject = os.path.join(str(tmp_path), "sub-01")
        _makefunc(os.path.join(subject, "func"), ["sub-01_task-rest"])
        touch(os.path.join(subject, "sub-01_sessions.tsv"))
        theruns = list(pc_locate.locatebidsruns(subject, str(tmp_path), "Philips"))
        assert [x.runid for x in theruns] == ["sub-01_task-rest"]

    def test_sessions_tsv_beside_sessions(self, tmp_path):
        subject = os.path.join(str(tmp_path), "sub-01")
        _makefunc(os.path.join(subject, "ses-1", "func"), ["sub-01_ses-1_task-rest"])
        touch(os.path.join(subject, "sub-01_sessions.tsv"))
        theruns = list(pc_locate.locatebidsruns(subject, str(tmp_path), "Philips"))
        assert [x.runid for x in theruns] == ["sub-01_ses-1_task-rest"]

    def test_sessions_tsv_only(self, tmp_path):
        subject = os.path.join(str(tmp_path), "sub-01")
        os.makedirs(subject)
        touch(os.path.join(subject, "sub-01_sessions.tsv"))
        with pytest.raises(pc_locate.FolderStructureError):
            pc_locate.locatebidsruns(subject, str(tmp_path), "Philips")

    def test_missing_log_in_later_run_found_first(self, tmp_path):
        subject = os.path.join(str(tmp_path), "sub-01")
        funcdir = _makefunc(os.path.join(subject, "func"), ["sub-01_run-1", "sub-01_run-2"])
        os.remove(os.path.join(funcdir, "sub-01_run-2_physio.log"))
        with pytest.raises(pc_locate.MissingLogfileError, match="sub-01_run-2_bold"):
            pc_locate.locatebidsruns(subject, str(tmp_path), "Philips")

    def test_missing_log_in_later_session_found_first(self, tmp_path):
        subject = os.path.join(str(tmp_path), "sub-01")
        _makefunc(os.path.join(subject, "ses-1", "func"), ["sub-01_ses-1_task-rest"])
        funcdir = _makefunc(os.path.join(subject, "ses-2", "func"), ["sub-01_ses-2_task-rest"])
        os.remove(os.path.join(funcdir, "sub-01_ses-2_task-rest_physio.log"))
        with pytest.raises(pc_locate.MissingLogfileError, match="ses-2"):
            pc_locate.locatebidsruns(subject, str(tmp_path), "Philips")

    def test_volumes_load_one_at_a_time(self, tmp_path, monkeypatch):
        subject = os.path.join(str(tmp_path), "sub-01")
        _makefunc(os.path.join(subject, "func"), ["sub-01_run-1", "sub-01_run-2"])
        loaded = []
        realloadfmri = pc_io.loadfmri

        def recordingloadfmri(fmrifile):
            loaded.append(os.path.basename(fmrifile))
            return realloadfmri(fmrifile)

        monkeypatch.setattr(pc_io, "loadfmri", recordingloadfmri)
        therunner = pc_locate.locatebidsruns(subject, str(tmp_path), "Philips")
        assert loaded == []
        assert next(therunner).runid == "sub-01_run-1"
        assert loaded == ["sub-01_run-1_bold.nii.gz"]
        assert next(therunner).runid == "sub-01_run-2"
        assert len(loaded) == 2


class TestMatchPolicies:
    def _ambiguoustree(self, tmp_path):
        subject = os.path.join(str(tmp_path), "sub-01")
        funcdir = _makefunc(os.path.join(subject, "func"), ["sub-01_task-rest"])
        touch(os.path.join(funcdir, "sub-01_task-rest_acq-2_physio.log"))
        return subject, funcdir

    def test_first(self, tmp_path):
        subject, funcdir = self._ambiguoustree(tmp_path)
        theruns = list(pc_locate.locatebidsruns(subject, str(tmp_path), "Philips"))
        assert len(theruns) == 1
        assert theruns[0].cardiac == os.path.join(funcdir, "sub-01_task-rest_acq-2_physio.log")
        assert [os.path.basename(x) for x in theruns[0].logfiles] == [
            "sub-01_task-rest_acq-2_physio.log",
            "sub-01_task-rest_physio.log",
        ]

    def test_error(self, tmp_path):
        subject, funcdir = self._ambiguoustree(tmp_path)
        with pytest.raises(pc_locate.AmbiguousLogfileError):
            list(pc_locate.locatebidsruns(subject, str(tmp_path), "Philips", matchpolicy="error"))

    def test_mapping(self, tmp_path):
        subject, funcdir = self._ambiguoustree(tmp_path)
        themapping = {
            "sub-01_task-rest_bold.nii.gz": [
                "sub-01_task-rest_physio.log",
                "sub-01_task-rest_acq-2_physio.log",
            ]
        }
        theruns = list(
            pc_locate.locatebidsruns(
                subject, str(tmp_path), "Philips", matchpolicy="mapping", mapping=themapping
            )
        )
        assert theruns[0].cardiac == os.path.join(funcdir, "sub-01_task-rest_physio.log")
        assert theruns[0].respiration == os.path.join(funcdir, "sub-01_task-rest_acq-2_physio.log")
        assert len(theruns[0].logfiles) == 2

    def test_mapping_single_log(self):
        fmrifile = os.path.join("/nothere", "run_bold.nii")
        with pytest.raises(pc_locate.MissingLogfileError):
            pc_locate.selectlogfiles(
                fmrifile, [], matchpolicy="mapping", mapping={"run_bold.nii": "run.log"}
            )

    def test_mapping_missing_entry(self, tmp_path):
        subject, funcdir = self._ambiguoustree(tmp_path)
        with pytest.raises(pc_locate.MissingLogfileError, match="mapping"):
            list(
                pc_locate.locatebidsruns(
                    subject, str(tmp_path), "Philips", matchpolicy="mapping", mapping={}
                )
            )

    def test_unknown_policy(self):
        with pytest.raises(ValueError):
            pc_locate.selectlogfiles("run_bold.nii", ["run.log"], matchpolicy="best")


class TestLocateSingleRun:
    def test_flat(self, tmp_path):
        thedir = str(tmp_path)
        writefmri(os.path.join(thedir, "rest_bold.nii"), randomfmri(shape=(2, 2, 4, 6)))
        touch(os.path.join(thedir, "scanphys.log"))
        touch(os.path.join(thedir, "notes.txt"))
        outdir = os.path.join(thedir, "out")
        theruns = list(pc_locate.locatesinglerun(thedir, outdir, "Philips"))
        assert len(theruns) == 1
        assert theruns[0].cardiac == os.path.join(thedir, "scanphys.log")
        assert theruns[0].outputdir == os.path.join(outdir, "rest_bold_physio_results")
        assert theruns[0].runid == "rest"
        assert theruns[0].numslices == 4
        assert theruns[0].numscans == 6

    def test_descends_into_single_folder(self, tmp_path):
        thedir = os.path.join(str(tmp_path), "wrapper", "run")
        os.makedirs(thedir)
        writefmri(os.path.join(thedir, "rest_bold.nii.gz"), randomfmri(shape=(2, 2, 2, 5)))
        touch(os.path.join(thedir, "rest.txt"))
        theruns = list(
            pc_locate.locatesinglerun(
                os.path.join(str(tmp_path), "wrapper"), str(tmp_path), "Biopac_Txt"
            )
        )
        assert theruns[0].fmrifile == os.path.join(thedir, "rest_bold.nii.gz")
        assert theruns[0].cardiac == os.path.join(thedir, "rest.txt")

    def test_two_folders_is_a_structure_error(self, tmp_path):
        for thename in ["run1", "run2"]:
            os.makedirs(os.path.join(str(tmp_path), thename))
        with pytest.raises(pc_locate.FolderStructureError):
            list(pc_locate.locatesinglerun(str(tmp_path), str(tmp_path), "Philips"))

    def test_no_fmri_files(self, tmp_path):
        touch(os.path.join(str(tmp_path), "scanphys.log"))
        touch(os.path.join(str(tmp_path), "notes.txt"))
        with pytest.raises(pc_locate.MissingInputError, match="Did not find any fMRI files"):
            list(pc_locate.locatesinglerun(str(tmp_path), str(tmp_path), "Philips"))

    def test_too_many_fmri_files(self, tmp_path):
        for thename in ["a_bold.nii.gz", "b_bold.nii.gz"]:
            writefmri(os.path.join(str(tmp_path), thename), randomfmri(shape=(2, 2, 2, 4)))
        touch(os.path.join(str(tmp_path), "scanphys.log"))
        with pytest.raises(pc_locate.FolderStructureError, match="Too many"):
            list(pc_locate.locatesinglerun(str(tmp_path), str(tmp_path), "Philips"))

    def test_no_log(self, tmp_path):
        writefmri(os.path.join(str(tmp_path), "a_bold.nii.gz"), randomfmri(shape=(2, 2, 2, 4)))
        with pytest.raises(pc_locate.MissingLogfileError):
            list(pc_locate.locatesinglerun(str(tmp_path), str(tmp_path), "Philips"))

    def test_no_indir(self, tmp_path):
        with pytest.raises(pc_locate.MissingInputError, match="Single-run"):
            list(pc_locate.locatesinglerun(None, str(tmp_path), "Philips"))


class TestLocateManualRun:
    def test_separate_logs(self, tmp_path):
        fmrifile = writefmri(os.path.join(str(tmp_path), "rest.nii.gz"), randomfmri())
        cardiac = touch(os.path.join(str(tmp_path), "card.log"))
        outdir = os.path.join(str(tmp_path), "out")
        theruns = list(pc_locate.locatemanualrun(fmrifile, outdir, cardiac=cardiac))
        assert theruns[0].cardiac == cardiac
        assert theruns[0].respiration is None
        assert theruns[0].logfiles == (cardiac,)
        assert theruns[0].outputdir == outdir

    def test_combined_log(self, tmp_path):
        fmrifile = writefmri(os.path.join(str(tmp_path), "rest.nii.gz"), randomfmri())
        combined = touch(os.path.join(str(tmp_path), "both.log"))
        theruns = list(
            pc_locate.locatemanualrun(
                fmrifile,
                str(tmp_path),
                cardiac=os.path.join(str(tmp_path), "nothere.log"),
                cardiacrespiration=combined,
            )
        )
        assert theruns[0].cardiac == combined
        assert theruns[0].respiration == combined
        assert theruns[0].logfiles == (combined,)

    def test_no_logs(self, tmp_path):
        fmrifile = writefmri(os.path.join(str(tmp_path), "rest.nii.gz"), randomfmri())
        with pytest.raises(pc_locate.MissingLogfileError, match="Manual input"):
            list(pc_locate.locatemanualrun(fmrifile, str(tmp_path)))

    def test_no_fmri(self, tmp_path):
        with pytest.raises(pc_locate.MissingInputError, match="No fMRI file"):
            list(pc_locate.locatemanualrun(None, str(tmp_path)))

    def test_bad_fmri(self, tmp_path):
        badfile = touch(os.path.join(str(tmp_path), "rest.nii.gz"))
        cardiac = touch(os.path.join(str(tmp_path), "card.log"))
        with pytest.raises(Exception):
            list(pc_locate.locatemanualrun(badfile, str(tmp_path), cardiac=cardiac))


class TestLocateRuns:
    def test_unknown_usecase(self, tmp_path):
        with pytest.raises(ValueError, match="No valid use-case selected."):
            pc_locate.locateruns("everything", str(tmp_path), pc_config.defaultconfig())

    def test_dispatch(self, tmp_path):
        subject = os.path.join(str(tmp_path), "sub-01")
        _makefunc(os.path.join(subject, "func"), ["sub-01_task-rest"], logext=".tsv.gz")
        config = pc_config.applyoverrides(
            pc_config.defaultconfig(), [("in_dir", subject), ("log_files.vendor", "BIDS")]
        )
        theruns = list(pc_locate.locateruns("bids_subject_folder", str(tmp_path), config))
        assert [x.runid for x in theruns] == ["sub-01_task-rest"]

    def test_manual_dispatch(self, tmp_path):
        fmrifile = writefmri(os.path.join(str(tmp_path), "rest.nii.gz"), randomfmri())
        combined = touch(os.path.join(str(tmp_path), "both.log"))
        config = pc_config.applyoverrides(
            pc_config.defaultconfig(),
            [("fmri_file", fmrifile), ("log_files.cardiac_respiration", combined)],
        )
        theruns = list(pc_locate.locateruns("manual_input", str(tmp_path), config))
        assert theruns[0].cardiac == combined

    def test_mapping_file(self, tmp_path):
        thedir = str(tmp_path)
        writefmri(os.path.join(thedir, "rest_bold.nii"), randomfmri(shape=(2, 2, 2, 4)))
        touch(os.path.join(thedir, "a.log"))
        touch(os.path.join(thedir, "b.log"))
        mappingfile = os.path.join(thedir, "mapping.json")
        with open(mappingfile, "w") as thefile:
            json.dump({"rest_bold.nii": "b.log"}, thefile)
        config = pc_config.applyoverrides(pc_config.defaultconfig(), [("in_dir", thedir)])
        theruns = list(
            pc_locate.locateruns(
                "single_run_folder",
                os.path.join(thedir, "out"),
                config,
                matchpolicy="mapping",
                mapping=mappingfile,
            )
        )
        assert theruns[0].cardiac == os.path.join(thedir, "b.log")

    def test_mapping_policy_needs_mapping(self, tmp_path):
        with pytest.raises(ValueError):
            pc_locate.locateruns(
                "single_run_folder", str(tmp_path), pc_config.defaultconfig(), matchpolicy="mapping"
            )

    def test_release(self, tmp_path):
        fmrifile = writefmri(os.path.join(str(tmp_path), "rest.nii.gz"), randomfmri())
        cardiac = touch(os.path.join(str(tmp_path), "card.log"))
        therun = next(pc_locate.locatemanualrun(fmrifile, str(tmp_path), cardiac=cardiac))
        assert therun.fmridata is not None
        therun.release()
        assert therun.fmridata is None
        assert therun.header is None
