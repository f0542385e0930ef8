"""
Design matrix assembly for first-level GLM analysis.

This module handles:
- Conversion of event/block onsets (in volumes) to a nilearn events table
- Parametric modulation of conditions
- Injection of non-convolved regressors (user covariates, outliers,
  run nuisance, motion)
- Column ordering expected by downstream contrast construction
"""

import logging
from typing import Dict, List, Optional

import numpy as np
import pandas as pd
from nilearn.glm.first_level import make_first_level_design_matrix

from glmcraft.core.model_spec import ModelSpec, OnsetSpec
from glmcraft.core.prep import NUISANCE_PREFIX, PrepSignals
from glmcraft.core.runs import RunSelection
from glmcraft.errors import ConfigurationError, ExternalSolverError

logger = logging.getLogger(__name__)

CONSTANT = "constant"

# Extra columns nilearn derives from a convolved condition
HRF_SUFFIXES = ("", "_derivative", "_dispersion")


def nuisance_column_count(regressor_names: List[str]) -> int:
    """
    Number of trailing nuisance-type columns, including the constant.

    Only non-convolved regressor names are counted, so a condition such as
    "anger-face" never shrinks the block of columns of interest.
    """
    return sum(NUISANCE_PREFIX in str(name) for name in regressor_names) + 1


class DesignAssembler:
    """
    Assemble a first-level design matrix from a model specification.

    Column order is: events, blocks, regressors (conditions in declared
    order, each followed by its parametric columns), then outlier, nuisance
    and motion regressors, and the constant last. Contrast construction
    relies on the nuisance columns and constant forming a trailing block.

    Parameters
    ----------
    model : ModelSpec
        Model with onsets already adjusted for the modeled runs.
    selection : RunSelection
        Modeled runs and volume index.
    prep_signals : PrepSignals, optional
        Source of outlier and motion regressors. Required when either is
        requested; a default one is created for nuisance-only models.

    Attributes
    ----------
    design_matrix : pd.DataFrame or None
        Built design matrix.
    """

    def __init__(
        self,
        model: ModelSpec,
        selection: RunSelection,
        prep_signals: Optional[PrepSignals] = None,
    ):
        self.model = model
        self.selection = selection
        self.prep_signals = prep_signals or PrepSignals(selection)
        self.design_matrix: Optional[pd.DataFrame] = None
        self._regressor_frame: Optional[pd.DataFrame] = None

    @property
    def n_scans(self) -> int:
        return self.selection.n_retained

    @property
    def tr(self) -> float:
        return self.selection.tr

    @property
    def frame_times(self) -> np.ndarray:
        return np.arange(self.n_scans) * self.tr

    @property
    def n_nuisance(self) -> int:
        """Trailing nuisance columns (prefixed regressors plus the constant)."""
        return nuisance_column_count(list(self.build_regressor_frame().columns))

    def _condition_rows(self, spec: OnsetSpec) -> List[Dict]:
        onsets = np.asarray(spec.onsets, dtype=float)
        if onsets.size and (onsets.min() < 0 or onsets.max() >= self.n_scans):
            raise ConfigurationError(
                f"Condition '{spec.name}' has onsets outside the {self.n_scans} modeled volumes"
            )

        rows = [
            {"trial_type": spec.name, "onset": onset * self.tr, "duration": duration * self.tr, "modulation": 1.0}
            for onset, duration in zip(spec.onsets, spec.durations)
        ]

        for parametric, column in zip(spec.parametrics, spec.parametric_columns()):
            values = np.asarray(parametric.values, dtype=float)
            centered = values - values.mean() if values.size else values
            rows.extend(
                {"trial_type": column, "onset": onset * self.tr, "duration": duration * self.tr, "modulation": value}
                for onset, duration, value in zip(spec.onsets, spec.durations, centered)
            )
        return rows

    def build_events_frame(self) -> pd.DataFrame:
        """
        Build the nilearn events table for all event and block conditions.

        Returns
        -------
        pd.DataFrame
            Columns trial_type, onset, duration (seconds) and modulation.
        """
        rows = []
        for spec in self.model.conditions:
            rows.extend(self._condition_rows(spec))
        return pd.DataFrame(rows, columns=["trial_type", "onset", "duration", "modulation"])

    def build_regressor_frame(self) -> pd.DataFrame:
        """
        Build the non-convolved regressors in design order.

        Returns
        -------
        pd.DataFrame
            One row per modeled volume: user regressors, then outliers,
            nuisance and motion regressors when enabled.
        """
        if self._regressor_frame is not None:
            return self._regressor_frame

        frames = []
        if self.model.regressors:
            user = {}
            for spec in self.model.regressors:
                if len(spec.values) != self.n_scans:
                    raise ConfigurationError(
                        f"Regressor '{spec.name}' has {len(spec.values)} values for "
                        f"{self.n_scans} modeled volumes"
                    )
                user[spec.name] = np.asarray(spec.values, dtype=float)
            frames.append(pd.DataFrame(user, index=range(self.n_scans)))

        if self.model.outliers:
            frames.append(self.prep_signals.outlier_regressors())
        if self.model.nuisance:
            frames.append(self.prep_signals.nuisance_regressors())
        if self.model.move:
            frames.append(self.prep_signals.motion_regressors())

        if frames:
            regressors = pd.concat(frames, axis=1)
        else:
            regressors = pd.DataFrame(index=range(self.n_scans))

        duplicated = regressors.columns[regressors.columns.duplicated()].tolist()
        if duplicated:
            raise ConfigurationError(f"Duplicated regressor names: {duplicated}")

        self._regressor_frame = regressors
        return regressors

    def plan_columns(self) -> List[str]:
        """
        Ordered design column names (before HRF derivative expansion).

        Returns
        -------
        list of str
            Condition and parametric columns, regressors, then the constant.
        """
        columns = []
        for spec in self.model.conditions:
            columns.append(spec.name)
            columns.extend(spec.parametric_columns())
        columns.extend(self.build_regressor_frame().columns)
        columns.append(CONSTANT)
        return columns

    def _order_columns(self, design: pd.DataFrame) -> pd.DataFrame:
        convolved = set()
        for spec in self.model.conditions:
            convolved.add(spec.name)
            convolved.update(spec.parametric_columns())

        ordered = []
        for column in self.plan_columns():
            if column in convolved:
                expanded = [column + suffix for suffix in HRF_SUFFIXES if column + suffix in design.columns]
                if not expanded:
                    logger.warning(f"Condition '{column}' has no onsets in the modeled runs; adding an empty column")
                    design[column] = 0.0
                    expanded = [column]
                ordered.extend(expanded)
            else:
                ordered.append(column)
        return design[ordered]

    def build(self) -> pd.DataFrame:
        """
        Build the design matrix with nilearn.

        Returns
        -------
        pd.DataFrame
            Design matrix indexed by frame time (seconds).

        Raises
        ------
        ExternalSolverError
            If nilearn fails to build the design.
        """
        events = self.build_events_frame()
        regressors = self.build_regressor_frame()

        logger.info(
            f"Building design: {self.model.n_conditions} condition(s), "
            f"{regressors.shape[1]} regressor(s), {self.n_scans} volumes, TR={self.tr}"
        )

        try:
            design = make_first_level_design_matrix(
                self.frame_times,
                events=events if len(events) else None,
                hrf_model=self.model.hrf_model,
                drift_model=None,
                add_regs=regressors.to_numpy() if regressors.shape[1] else None,
                add_reg_names=list(regressors.columns) if regressors.shape[1] else None,
            )
        except Exception as e:
            raise ExternalSolverError(f"Design matrix construction failed: {e}") from e

        self.design_matrix = self._order_columns(design)
        logger.info(f"Design matrix columns: {list(self.design_matrix.columns)}")
        return self.design_matrix

    def summary(self) -> str:
        """Text summary of the assembled design."""
        lines = ["Design Matrix Summary", "=" * 40]

        if self.design_matrix is None:
            lines.append("Design matrix not built yet")
            return "\n".join(lines)

        lines.append(f"Shape: {self.design_matrix.shape}")
        lines.append(f"TR: {self.tr}")
        lines.append(f"Runs: {list(self.selection.include_run)}")
        lines.append(f"Nuisance columns (incl. constant): {self.n_nuisance}")
        lines.append("\nColumns:")
        for col in self.design_matrix.columns:
            lines.append(f"  - {col}")

        return "\n".join(lines)
