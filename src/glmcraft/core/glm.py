"""
First-level GLM estimation for a single subject.

This module handles:
- Optional demeaning of the regressors of interest
- Explicit masking of the functional data
- Parameter estimation with nilearn's run_glm
- The "effects of interest" F contrast
- Saving parameter, residual and contrast maps
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import nibabel as nib
import numpy as np
import pandas as pd
from nilearn.glm.contrasts import compute_contrast
from nilearn.glm.first_level import run_glm
from nilearn.image import concat_imgs, index_img
from nilearn.maskers import NiftiMasker

from glmcraft.core.model_spec import ModelSpec
from glmcraft.core.runs import RunSelection
from glmcraft.errors import ConfigurationError, ExternalSolverError

logger = logging.getLogger(__name__)

EFFECTS_OF_INTEREST = "effects of interest"

# Parametric columns whose name contains this token are demeaned with the
# conditions they modulate
OTHER_TOKEN = "other"


def demean_column_count(model: ModelSpec) -> int:
    """
    Number of leading design columns to demean.

    This is the number of event and block conditions plus the number of
    parametric modulators whose own name contains "other" (the condition
    name is not considered).
    """
    count = model.n_conditions
    for spec in model.conditions:
        count += sum(OTHER_TOKEN in parametric.name for parametric in spec.parametrics)
    return count


def demean_design(design_matrix: pd.DataFrame, n_columns: int) -> pd.DataFrame:
    """Return a copy of the design with the first ``n_columns`` mean-centred."""
    demeaned = design_matrix.copy()
    columns = list(demeaned.columns[:n_columns])
    demeaned[columns] = demeaned[columns] - demeaned[columns].mean()
    logger.info(f"Demeaned {len(columns)} design column(s): {columns}")
    return demeaned


def effects_of_interest_matrix(columns: List[str], n_nuisance: int = 1) -> Optional[np.ndarray]:
    """
    F contrast spanning every column except the trailing nuisance block.

    ``n_nuisance`` is the size of that block, constant included (see
    ``DesignAssembler.n_nuisance``). Returns None when the design has no
    column of interest.
    """
    n_columns = len(columns)
    n_interest = n_columns - n_nuisance
    if n_interest <= 0:
        return None
    return np.eye(n_columns)[:n_interest]


def mask_name(mask: Union[str, Path]) -> str:
    """Mask file name without its (possibly double) extension."""
    return Path(mask).name.split(".")[0]


class FirstLevelGLM:
    """
    First-level GLM for one subject's concatenated runs.

    Parameters
    ----------
    mask : str or Path
        Explicit mask image. No implicit intensity threshold is applied.
    noise_model : str
        Temporal noise model passed to nilearn ("ar1", "arN" or "ols").

    Attributes
    ----------
    masker : NiftiMasker
        Fitted masker.
    labels : np.ndarray or None
        Voxel labels returned by run_glm.
    regression_results : dict
        RegressionResults per label.
    results : dict
        Contrast name -> {"contrast_def", "stat_type", "maps"}.
    """

    def __init__(
        self,
        mask: Union[str, Path],
        noise_model: str = "ar1",
    ):
        if mask is None:
            raise ConfigurationError("An explicit mask is required for estimation")
        self.mask = Path(mask)
        self.noise_model = noise_model
        self.masker = NiftiMasker(mask_img=str(self.mask), standardize=False)
        self.labels: Optional[np.ndarray] = None
        self.regression_results: Dict[Any, Any] = {}
        self.results: Dict[str, Dict[str, Any]] = {}
        self._design_matrix: Optional[pd.DataFrame] = None

        logger.info(f"Using mask: {mask_name(self.mask)}")

    @property
    def mask_info(self) -> Dict[str, Any]:
        """Masking settings: explicit mask only, implicit threshold disabled."""
        return {
            "mask": str(self.mask),
            "implicit_threshold": float("-inf"),
            "implicit_masking": False,
            "description": f"explicit masking only - using {mask_name(self.mask)}",
        }

    def load_data(
        self,
        functional_files: Sequence[Union[str, Path]],
        selection: RunSelection,
    ) -> np.ndarray:
        """
        Load, select and mask the functional volumes of the modeled runs.

        Parameters
        ----------
        functional_files : sequence of str or Path
            4D images covering every acquired run, in run order.
        selection : RunSelection
            Modeled runs and volume index.

        Returns
        -------
        np.ndarray
            Masked data of shape (n_modeled_volumes, n_voxels).
        """
        if not functional_files:
            raise ConfigurationError("No functional files available for estimation")

        for filepath in functional_files:
            if not Path(filepath).exists():
                raise FileNotFoundError(f"Functional file not found: {filepath}")
            logger.info(f"Loading file: {filepath}")

        try:
            img = concat_imgs([str(f) for f in functional_files], auto_resample=False)
        except Exception as e:
            raise ExternalSolverError(f"Could not load functional images: {e}") from e

        n_volumes = img.shape[3] if len(img.shape) > 3 else 1
        expected = selection.all_runs.total_volumes
        if n_volumes != expected:
            raise ConfigurationError(
                f"Functional images contain {n_volumes} volumes, expected {expected} "
                f"(nvols={selection.all_runs.nvols})"
            )

        if selection.excludes_volumes:
            img = index_img(img, np.flatnonzero(selection.volume_index))

        try:
            return self.masker.fit_transform(img)
        except Exception as e:
            raise ExternalSolverError(f"Masking failed: {e}") from e

    def fit(
        self,
        data: np.ndarray,
        design_matrix: pd.DataFrame,
    ) -> "FirstLevelGLM":
        """
        Estimate the GLM parameters.

        Parameters
        ----------
        data : np.ndarray
            Masked data (n_volumes, n_voxels), see ``load_data``.
        design_matrix : pd.DataFrame
            Design with one row per volume.

        Returns
        -------
        FirstLevelGLM
            Self, for method chaining.
        """
        if data.shape[0] != design_matrix.shape[0]:
            raise ConfigurationError(
                f"Number of volumes ({data.shape[0]}) does not match "
                f"design matrix rows ({design_matrix.shape[0]})"
            )

        logger.info(f"Fitting GLM on {data.shape[1]} voxels with {design_matrix.shape[1]} regressors")

        try:
            self.labels, self.regression_results = run_glm(
                data, design_matrix.to_numpy(), noise_model=self.noise_model
            )
        except Exception as e:
            raise ExternalSolverError(f"Parameter estimation failed: {e}") from e

        self._design_matrix = design_matrix
        logger.info("GLM fitted successfully")
        return self

    def _check_fitted(self) -> None:
        if self.labels is None:
            raise ValueError("Model not fitted. Call fit() first.")

    def parameter_estimates(self) -> np.ndarray:
        """Betas of shape (n_regressors, n_voxels)."""
        self._check_fitted()
        n_voxels = self.labels.shape[0]
        betas = np.zeros((self._design_matrix.shape[1], n_voxels))
        for label, result in self.regression_results.items():
            betas[:, self.labels == label] = result.theta
        return betas

    def residual_variance(self) -> np.ndarray:
        """Residual mean square per voxel."""
        self._check_fitted()
        variance = np.zeros(self.labels.shape[0])
        for label, result in self.regression_results.items():
            variance[self.labels == label] = result.dispersion
        return variance

    def compute_contrast(
        self,
        contrast: np.ndarray,
        contrast_name: str,
        stat_type: str = "F",
    ) -> Dict[str, nib.Nifti1Image]:
        """
        Compute a contrast and return its stat, p-value and z-score maps.

        Parameters
        ----------
        contrast : np.ndarray
            Vector (t) or matrix (F) over the design columns.
        contrast_name : str
            Name under which results are stored.
        stat_type : str
            "t" or "F".

        Returns
        -------
        dict
            Map type -> image.
        """
        self._check_fitted()
        logger.info(f"Computing contrast: {contrast_name}")

        try:
            con = compute_contrast(self.labels, self.regression_results, contrast, stat_type=stat_type)
            maps = {
                "stat": self.masker.inverse_transform(con.stat()),
                "p_value": self.masker.inverse_transform(con.p_value()),
                "z_score": self.masker.inverse_transform(con.z_score()),
            }
        except Exception as e:
            raise ExternalSolverError(f"Failed to compute contrast '{contrast_name}': {e}") from e

        self.results[contrast_name] = {
            "contrast_def": np.asarray(contrast),
            "stat_type": stat_type,
            "maps": maps,
        }
        return maps

    def add_effects_of_interest(self, n_nuisance: int = 1) -> Optional[Dict[str, nib.Nifti1Image]]:
        """Add the F contrast over all columns before the trailing ``n_nuisance``."""
        self._check_fitted()
        columns = list(self._design_matrix.columns)
        matrix = effects_of_interest_matrix(columns, n_nuisance)
        if matrix is None:
            logger.warning("No regressors of interest; skipping effects of interest contrast")
            return None
        return self.compute_contrast(matrix, EFFECTS_OF_INTEREST, stat_type="F")

    def contrast_definitions(self) -> List[Dict[str, Any]]:
        """Serializable description of every computed contrast."""
        columns = list(self._design_matrix.columns) if self._design_matrix is not None else []
        definitions = []
        for name, result in self.results.items():
            weights = np.atleast_2d(result["contrast_def"])
            definitions.append({
                "name": name,
                "stat_type": result["stat_type"],
                "columns": [columns[i] for i in np.flatnonzero(np.any(weights != 0, axis=0))],
                "weights": weights.tolist(),
            })
        return definitions

    def save_results(
        self,
        output_dir: Union[str, Path],
    ) -> Dict[str, Path]:
        """
        Save parameter, residual, mask and contrast maps.

        Parameters
        ----------
        output_dir : str or Path
            Output directory.

        Returns
        -------
        dict
            Dictionary mapping result names to file paths.
        """
        self._check_fitted()
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        saved_files = {}

        for i, beta in enumerate(self.parameter_estimates(), start=1):
            filepath = output_dir / f"beta_{i:04d}.nii.gz"
            nib.save(self.masker.inverse_transform(beta), filepath)
            saved_files[f"beta_{i:04d}"] = filepath

        filepath = output_dir / "resms.nii.gz"
        nib.save(self.masker.inverse_transform(self.residual_variance()), filepath)
        saved_files["resms"] = filepath

        filepath = output_dir / "mask.nii.gz"
        nib.save(self.masker.mask_img_, filepath)
        saved_files["mask"] = filepath

        for i, (contrast_name, result) in enumerate(self.results.items(), start=1):
            prefix = "spmF" if result["stat_type"] == "F" else "spmT"
            for map_type, stat_map in result["maps"].items():
                filepath = output_dir / f"{prefix}_{i:04d}_{map_type}.nii.gz"
                nib.save(stat_map, filepath)
                saved_files[f"{contrast_name}_{map_type}"] = filepath
                logger.debug(f"Saved: {filepath}")

        logger.info(f"Saved {len(saved_files)} result files to {output_dir}")
        return saved_files
