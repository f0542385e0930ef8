"""Tests for preprocessing parameters and nuisance signals."""

import json

import numpy as np
import pytest

from glmcraft.core.model_spec import RunSet
from glmcraft.core.prep import MOTION_COLUMNS, PrepSignals, load_prep_params
from glmcraft.core.runs import select_runs
from glmcraft.errors import ConfigurationError

from conftest import NVOLS, TR


class TestLoadPrepParams:
    """Tests for load_prep_params."""

    def test_load_yaml_record(self, prep_dir, functional_files, motion_files, outlier_file):
        """Scan parameters and files are read; relative paths resolved."""
        prep = load_prep_params(prep_dir, "prep")

        assert prep.nses == 2
        assert prep.nvols == NVOLS
        assert prep.tr == TR
        assert prep.functional_files == tuple(functional_files)
        assert prep.motion_files == tuple(motion_files)
        assert prep.outlier_file == outlier_file
        assert prep.cleanupzip is False
        assert prep.source == prep_dir / "prep.yaml"

    def test_load_json_record(self, temp_dir):
        """JSON records are supported."""
        with open(temp_dir / "params.json", "w") as f:
            json.dump({"nses": 1, "nvols": 20, "tr": 1.5, "cleanupzip": True}, f)

        prep = load_prep_params(temp_dir, "params")

        assert prep.nvols == 20
        assert prep.functional_files == ()
        assert prep.cleanupzip is True

    def test_missing_record(self, temp_dir):
        """No record gives None."""
        assert load_prep_params(temp_dir, "prep") is None
        assert load_prep_params(None, "prep") is None

    def test_incomplete_record(self, temp_dir):
        """Records must provide nses, nvols and tr."""
        with open(temp_dir / "prep.json", "w") as f:
            json.dump({"nses": 2, "nvols": 10}, f)

        with pytest.raises(ConfigurationError, match="tr"):
            load_prep_params(temp_dir, "prep")

    def test_incomplete_record_when_scan_params_not_required(self, temp_dir):
        """File lists are still read when the scan parameters come from elsewhere."""
        with open(temp_dir / "prep.json", "w") as f:
            json.dump({"nses": 2, "nvols": 10, "ra": ["rp1.txt", "rp2.txt"]}, f)

        prep = load_prep_params(temp_dir, "prep", require_scan_params=False)

        assert prep.tr is None
        assert prep.nses == 2
        assert prep.motion_files == (temp_dir / "rp1.txt", temp_dir / "rp2.txt")


class TestPrepSignals:
    """Tests for PrepSignals."""

    @pytest.fixture
    def runs(self):
        return RunSet.from_params(2, NVOLS, TR)

    def test_nuisance_all_runs(self, runs):
        """Run means for all but the last run, a centred trend per run."""
        signals = PrepSignals(select_runs("all", runs))
        nuisance = signals.nuisance_regressors()

        assert list(nuisance.columns) == ["r-run1", "r-trend1", "r-trend2"]
        assert nuisance.shape[0] == sum(NVOLS)
        assert nuisance["r-run1"].sum() == NVOLS[0]
        assert np.isclose(nuisance["r-trend1"].sum(), 0.0)
        assert np.all(nuisance["r-trend2"].iloc[:NVOLS[0]] == 0)

    def test_nuisance_single_run(self, runs):
        """A single modeled run only gets its trend."""
        signals = PrepSignals(select_runs([2], runs))
        nuisance = signals.nuisance_regressors()

        assert list(nuisance.columns) == ["r-trend1"]
        assert nuisance.shape[0] == NVOLS[1]

    def test_outliers_in_modeled_runs(self, runs, outlier_file):
        """Spikes are placed on the retained timeline."""
        signals = PrepSignals(select_runs("all", runs), outlier_file=outlier_file)
        outliers = signals.outlier_regressors()

        assert list(outliers.columns) == ["r-outlier1", "r-outlier2"]
        assert outliers["r-outlier1"].iloc[3] == 1
        assert outliers["r-outlier2"].iloc[15] == 1
        assert outliers.values.sum() == 2

    def test_outliers_in_excluded_run(self, runs, outlier_file):
        """Outliers of excluded runs are dropped; others shift."""
        signals = PrepSignals(select_runs([2], runs), outlier_file=outlier_file)
        outliers = signals.outlier_regressors()

        assert list(outliers.columns) == ["r-outlier1"]
        assert outliers["r-outlier1"].iloc[15 - NVOLS[0]] == 1

    def test_outliers_without_file(self, runs):
        """Requesting outliers without a file fails."""
        with pytest.raises(ConfigurationError):
            PrepSignals(select_runs("all", runs)).outlier_regressors()

    def test_motion(self, runs, motion_files):
        """Motion parameters are concatenated and filtered."""
        signals = PrepSignals(select_runs([2], runs), motion_files=motion_files)
        motion = signals.motion_regressors()

        assert list(motion.columns) == [f"r-{name}" for name in MOTION_COLUMNS]
        assert motion.shape == (NVOLS[1], 6)
        expected = np.loadtxt(motion_files[1])
        assert np.allclose(motion.to_numpy(), expected)

    def test_motion_file_count(self, runs, motion_files):
        """One motion file per acquired run is required."""
        signals = PrepSignals(select_runs("all", runs), motion_files=motion_files[:1])
        with pytest.raises(ConfigurationError):
            signals.motion_regressors()
