"""Tests for the GLM module."""

import nibabel as nib
import numpy as np
import pandas as pd
import pytest

from glmcraft.core.design_matrix import DesignAssembler
from glmcraft.core.glm import (
    EFFECTS_OF_INTEREST,
    FirstLevelGLM,
    demean_column_count,
    demean_design,
    effects_of_interest_matrix,
)
from glmcraft.core.model_spec import ModelSpec, OnsetSpec, Parametric, RunSet
from glmcraft.core.prep import PrepSignals
from glmcraft.core.runs import select_runs
from glmcraft.errors import ConfigurationError

from conftest import NVOLS, TR


class TestDesignHelpers:
    """Tests for demeaning and contrast helpers."""

    def test_demean_column_count(self):
        """Conditions plus parametrics whose name contains 'other'."""
        model = ModelSpec(
            subject_id="s01",
            glm_name="glm",
            runs=RunSet.from_params(1, 10, 2.0),
            events=(
                OnsetSpec("go", (1, 5), (0.0, 0.0), parametrics=(
                    Parametric("rt", (1.0, 2.0)),
                    Parametric("other", (3.0, 1.0)),
                )),
                OnsetSpec("stop", (3,), (0.0,)),
            ),
        )
        assert demean_column_count(model) == 3

    def test_demean_other_matches_parametric_name_only(self):
        """A condition name containing 'other' does not count its modulators."""
        model = ModelSpec(
            subject_id="s01",
            glm_name="glm",
            runs=RunSet.from_params(1, 10, 2.0),
            events=(
                OnsetSpec("mother", (1, 5), (0.0, 0.0), parametrics=(Parametric("rt", (1.0, 2.0)),)),
            ),
        )
        assert demean_column_count(model) == 1

    def test_demean_design(self):
        """Only the leading columns are centred, on a copy."""
        design = pd.DataFrame({"a": [1.0, 2.0, 3.0], "b": [2.0, 2.0, 5.0], "constant": [1.0, 1.0, 1.0]})
        demeaned = demean_design(design, 2)

        assert np.allclose(demeaned[["a", "b"]].mean(), 0.0)
        assert np.allclose(demeaned["constant"], 1.0)
        assert design["a"].tolist() == [1.0, 2.0, 3.0]

    def test_effects_of_interest_matrix(self):
        """Identity rows over the non-nuisance columns."""
        columns = ["go", "goxrt", "r-run1", "r-trend1", "r-trend2", "constant"]
        matrix = effects_of_interest_matrix(columns, n_nuisance=4)

        assert matrix.shape == (2, 6)
        assert np.array_equal(matrix[:, :2], np.eye(2))
        assert not matrix[:, 2:].any()

    def test_effects_of_interest_without_conditions(self):
        """No columns of interest gives no contrast."""
        assert effects_of_interest_matrix(["r-trend1", "constant"], n_nuisance=2) is None

    def test_effects_of_interest_with_hyphenated_condition(self):
        """Condition columns containing 'r-' are columns of interest."""
        matrix = effects_of_interest_matrix(["anger-face", "happy", "constant"])

        assert matrix.shape == (2, 3)
        assert np.array_equal(matrix[:, :2], np.eye(2))


class TestFirstLevelGLM:
    """Tests for FirstLevelGLM."""

    @pytest.fixture
    def selection(self):
        return select_runs("all", RunSet.from_params(2, NVOLS, TR))

    @pytest.fixture
    def assembler(self, selection):
        model = ModelSpec(
            subject_id="s01",
            glm_name="glm",
            runs=selection.runs,
            events=(OnsetSpec("cue", tuple(range(0, sum(NVOLS), 4)), (0.0,) * 6),),
            nuisance=True,
        )
        return DesignAssembler(model, selection, PrepSignals(selection))

    @pytest.fixture
    def design_matrix(self, assembler):
        return assembler.build()

    def test_mask_required(self):
        """Estimation needs an explicit mask."""
        with pytest.raises(ConfigurationError):
            FirstLevelGLM(mask=None)

    def test_mask_info(self, mask_file):
        """Implicit masking is disabled."""
        glm = FirstLevelGLM(mask=mask_file)
        info = glm.mask_info

        assert info["implicit_threshold"] == float("-inf")
        assert info["implicit_masking"] is False
        assert info["description"] == "explicit masking only - using brainmask"

    def test_load_data(self, mask_file, functional_files, selection):
        """Runs are concatenated and masked."""
        glm = FirstLevelGLM(mask=mask_file)
        data = glm.load_data(functional_files, selection)

        assert data.shape == (sum(NVOLS), 64)

    def test_load_data_subset(self, mask_file, functional_files):
        """Only volumes of modeled runs are kept."""
        selection = select_runs([2], RunSet.from_params(2, NVOLS, TR))
        glm = FirstLevelGLM(mask=mask_file)
        data = glm.load_data(functional_files, selection)

        assert data.shape == (NVOLS[1], 64)

    def test_load_data_volume_mismatch(self, mask_file, functional_files):
        """Images must match the declared number of volumes."""
        selection = select_runs("all", RunSet.from_params(2, [12, 12], TR))
        glm = FirstLevelGLM(mask=mask_file)

        with pytest.raises(ConfigurationError, match="volumes"):
            glm.load_data(functional_files, selection)

    def test_load_data_missing_file(self, mask_file, temp_dir, selection):
        """Missing functional files are reported."""
        glm = FirstLevelGLM(mask=mask_file)
        with pytest.raises(FileNotFoundError):
            glm.load_data([temp_dir / "missing.nii.gz"], selection)

    def test_fit_and_effects_of_interest(self, mask_file, functional_files, selection, assembler, design_matrix):
        """Betas cover every column; the F contrast spans the conditions."""
        glm = FirstLevelGLM(mask=mask_file)
        data = glm.load_data(functional_files, selection)
        glm.fit(data, design_matrix)

        betas = glm.parameter_estimates()
        assert betas.shape == (design_matrix.shape[1], 64)
        assert glm.residual_variance().shape == (64,)

        maps = glm.add_effects_of_interest(assembler.n_nuisance)
        assert set(maps) == {"stat", "p_value", "z_score"}
        assert isinstance(maps["stat"], nib.Nifti1Image)

        definitions = glm.contrast_definitions()
        assert definitions[0]["name"] == EFFECTS_OF_INTEREST
        assert definitions[0]["stat_type"] == "F"
        assert definitions[0]["columns"] == ["cue"]

    def test_fit_row_mismatch(self, mask_file, design_matrix):
        """Data and design must have the same number of volumes."""
        glm = FirstLevelGLM(mask=mask_file)
        with pytest.raises(ConfigurationError):
            glm.fit(np.zeros((5, 64)), design_matrix)

    def test_not_fitted(self, mask_file):
        """Results require a fitted model."""
        glm = FirstLevelGLM(mask=mask_file)
        with pytest.raises(ValueError, match="not fitted"):
            glm.parameter_estimates()

    def test_save_results(self, mask_file, functional_files, selection, design_matrix, temp_dir):
        """Maps are written as NIfTI files."""
        glm = FirstLevelGLM(mask=mask_file, noise_model="ols")
        glm.fit(glm.load_data(functional_files, selection), design_matrix)
        glm.add_effects_of_interest()

        saved = glm.save_results(temp_dir / "out")

        n_columns = design_matrix.shape[1]
        assert len([k for k in saved if k.startswith("beta_")]) == n_columns
        assert (temp_dir / "out" / "resms.nii.gz").exists()
        assert (temp_dir / "out" / "mask.nii.gz").exists()
        assert (temp_dir / "out" / "spmF_0001_stat.nii.gz").exists()

        beta = nib.load(saved["beta_0001"])
        assert beta.shape == (6, 6, 6)
