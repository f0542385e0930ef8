"""
Main pipeline module for GLMCraft.

This module provides a high-level interface for specifying and
estimating a first-level GLM for one subject.
"""

import json
import logging
import shutil
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union

import pandas as pd
import yaml

from glmcraft.config import Config, load_config
from glmcraft.core.design_matrix import DesignAssembler
from glmcraft.core.glm import FirstLevelGLM, demean_column_count, demean_design
from glmcraft.core.model_spec import BLOCK, EVENT, ModelSpec, OnsetSpec, RegressorSpec, RunSet
from glmcraft.core.onsets import adjust_model
from glmcraft.core.prep import PrepParams, PrepSignals, load_prep_params
from glmcraft.core.runs import RunSelection, select_runs
from glmcraft.errors import ConfigurationError, MissingParametersError

logger = logging.getLogger(__name__)

NICELINE = "=" * 72


class PipelineState(Enum):
    """Stages of a first-level GLM run."""

    RESOLVE_PARAMS = "resolve_params"
    VALIDATE_RUNS = "validate_runs"
    ADJUST_ONSETS = "adjust_onsets"
    ASSEMBLE_MODEL = "assemble_model"
    BUILD_DESIGN = "build_design"
    ESTIMATE = "estimate"
    DESIGN_ONLY = "design_only"
    PERSIST = "persist"
    DONE = "done"
    ABORTED = "aborted"


class GLMPipeline:
    """
    High-level pipeline for one subject's first-level GLM.

    This class orchestrates the complete workflow:
    1. Resolve scan parameters (GLM file or saved prep parameters)
    2. Select the modeled runs
    3. Adjust onsets for excluded runs
    4. Assemble and build the design matrix
    5. Estimate parameters (unless design_only)
    6. Save the model and its specification

    Parameters
    ----------
    subject_id : str
        Subject identifier (e.g., "s01").
    config : Config, str, Path, or dict, optional
        Configuration (Config object, path to GLM parameter file, or dict).
    output_dir : str or Path, optional
        Root output directory; overrides the ``output_dir`` setting.

    Attributes
    ----------
    state : PipelineState
        Current stage.
    model : ModelSpec or None
        Model specification, updated by each stage.
    selection : RunSelection or None
        Modeled runs.
    design_matrix : pd.DataFrame or None
        Built design matrix.
    glm : FirstLevelGLM or None
        Fitted model (None in design-only mode).
    """

    def __init__(
        self,
        subject_id: str,
        config: Optional[Union[Config, str, Path, Dict]] = None,
        output_dir: Optional[Union[str, Path]] = None,
    ):
        self.subject_id = str(subject_id)

        # Load configuration
        if config is None:
            self.config = Config()
        elif isinstance(config, Config):
            self.config = config
        elif isinstance(config, dict):
            self.config = Config(**config)
        else:
            self.config = load_config(config)

        root = Path(output_dir) if output_dir is not None else self.config.resolve_path("output_dir", self.subject_id)
        self.glm_name = self.config.get("glm_name")
        self.glm_dir = root / self.glm_name / self.subject_id

        self.state = PipelineState.RESOLVE_PARAMS
        self.model: Optional[ModelSpec] = None
        self.selection: Optional[RunSelection] = None
        self.assembler: Optional[DesignAssembler] = None
        self.design_matrix: Optional[pd.DataFrame] = None
        self.glm: Optional[FirstLevelGLM] = None
        self._prep: Optional[PrepParams] = None

        logger.info(f"Initializing GLM pipeline for subject: {self.subject_id}")
        logger.info(f"GLM directory: {self.glm_dir}")

    def _transition(self, state: PipelineState) -> None:
        logger.debug(f"{self.state.value} -> {state.value}")
        self.state = state

    def resolve_params(self) -> ModelSpec:
        """
        Resolve scan parameters and build the initial model specification.

        Scan parameters come from the GLM configuration when nses, nvols and
        tr are all given, otherwise from the saved preprocessing parameters.

        Raises
        ------
        MissingParametersError
            If neither source provides the scan parameters.
        """
        self._transition(PipelineState.RESOLVE_PARAMS)

        prep_dir = self.config.resolve_path("prep_dir", self.subject_id)
        self._prep = load_prep_params(
            prep_dir,
            self.config.get("prep_name"),
            require_scan_params=not self.config.has_scan_params(),
        )

        if self.config.has_scan_params():
            nses, nvols, tr = (self.config.get(k) for k in ("nses", "nvols", "tr"))
        elif self._prep is not None:
            nses, nvols, tr = self._prep.nses, self._prep.nvols, self._prep.tr
        else:
            raise MissingParametersError(
                "Missing required parameters for model estimation (nses, nvols, tr): "
                "they are unspecified and a prep parameter file was not found"
            )

        design_only = bool(self.config.get("design_only"))
        mask = self.config.resolve_path("mask", self.subject_id)
        if not design_only and mask is None:
            raise ConfigurationError("A mask is required for estimation (set 'mask' or use design_only)")

        prep = self._prep or PrepParams(nses=nses, nvols=nvols, tr=tr)

        self.model = ModelSpec(
            subject_id=self.subject_id,
            glm_name=self.glm_name,
            runs=RunSet.from_params(nses, nvols, tr),
            include_run=self.config.get("include_run"),
            events=tuple(
                OnsetSpec.from_config(name, entry, kind=EVENT)
                for name, entry in (self.config.get("events") or {}).items()
            ),
            blocks=tuple(
                OnsetSpec.from_config(name, entry, kind=BLOCK)
                for name, entry in (self.config.get("blocks") or {}).items()
            ),
            regressors=tuple(
                RegressorSpec.from_config(name, values)
                for name, values in (self.config.get("regressors") or {}).items()
            ),
            outliers=bool(self.config.get("outliers")),
            nuisance=bool(self.config.get("nuisance")),
            move=bool(self.config.get("move")),
            mask=mask,
            demean=bool(self.config.get("demean")),
            design_only=design_only,
            hrf_model=self.config.get("hrf_model"),
            noise_model=self.config.get("noise_model"),
            functional_files=prep.functional_files,
            motion_files=prep.motion_files,
            outlier_file=prep.outlier_file,
            cleanupzip=prep.cleanupzip,
        )
        return self.model

    def validate_runs(self) -> RunSelection:
        """Select the modeled runs and check their TR."""
        self._transition(PipelineState.VALIDATE_RUNS)
        self.selection = select_runs(self.model.include_run, self.model.runs)
        return self.selection

    def adjust_onsets(self) -> ModelSpec:
        """Re-index onsets and regressors onto the modeled volumes."""
        self._transition(PipelineState.ADJUST_ONSETS)
        model = adjust_model(
            self.model.updated(include_run=self.selection.include_run),
            self.selection.volume_index,
        )
        self.model = model.updated(runs=self.selection.runs)
        return self.model

    def assemble_model(self) -> DesignAssembler:
        """Merge conditions, regressors and prep signals into a column plan."""
        self._transition(PipelineState.ASSEMBLE_MODEL)
        prep_signals = PrepSignals(
            self.selection,
            motion_files=self.model.motion_files,
            outlier_file=self.model.outlier_file,
        )
        self.assembler = DesignAssembler(self.model, self.selection, prep_signals)
        columns = self.assembler.plan_columns()
        logger.info(f"Model columns: {columns}")
        return self.assembler

    def build_design(self) -> pd.DataFrame:
        """Materialize the numeric design matrix."""
        self._transition(PipelineState.BUILD_DESIGN)
        self.design_matrix = self.assembler.build()
        return self.design_matrix

    def estimate(self) -> FirstLevelGLM:
        """
        Estimate the model on the subject's functional data.

        Demeans the regressors of interest if requested, applies the explicit
        mask, fits the GLM and adds the effects of interest F contrast.
        """
        self._transition(PipelineState.ESTIMATE)
        design = self.design_matrix

        if self.model.demean:
            design = demean_design(design, demean_column_count(self.model))

        self.glm = FirstLevelGLM(mask=self.model.mask, noise_model=self.model.noise_model)
        logger.info(f"The model has been modified to use mask: {self.glm.mask_info['description']}")

        data = self.glm.load_data(self.model.functional_files, self.selection)

        logger.info(f"Estimating parameters for model: {self.glm_name}")
        self.glm.fit(data, design)
        self.glm.add_effects_of_interest(self.assembler.n_nuisance)
        return self.glm

    def _model_container(self, saved_files: Dict[str, Path]) -> Dict[str, Any]:
        columns = list(self.design_matrix.columns)
        container = {
            "subject_id": self.subject_id,
            "glm_name": self.glm_name,
            "design_only": self.model.design_only,
            "tr": self.selection.tr,
            "include_run": list(self.selection.include_run),
            "nvols": self.selection.runs.nvols,
            "hrf_model": self.model.hrf_model,
            "columns": columns,
            "n_nuisance": self.assembler.n_nuisance,
            "design_matrix": "design_matrix.tsv",
        }
        if self.glm is not None:
            container.update({
                "noise_model": self.model.noise_model,
                "demeaned_columns": demean_column_count(self.model) if self.model.demean else 0,
                "masking": self.glm.mask_info,
                "contrasts": self.glm.contrast_definitions(),
                "files": {name: path.name for name, path in saved_files.items()},
            })
        return container

    def _swap_into_place(self, staging: Path) -> None:
        """
        Move a completed staging directory to the GLM directory.

        A previous model is renamed to a backup first and deleted only once
        the new one is in place. It is restored if the final rename fails.
        """
        backup = self.glm_dir.with_name(f".{self.subject_id}.backup")
        if backup.exists():
            shutil.rmtree(backup)

        if self.glm_dir.exists():
            logger.info(f"Moving previous GLM directory from {self.glm_dir} to {backup}")
            self.glm_dir.rename(backup)

        try:
            staging.rename(self.glm_dir)
        except OSError:
            if backup.exists():
                logger.warning(f"Restoring previous GLM directory: {self.glm_dir}")
                backup.rename(self.glm_dir)
            raise

        if backup.exists():
            shutil.rmtree(backup)

    def persist(self) -> Dict[str, Path]:
        """
        Save the model container and the model specification.

        Files are written to a temporary directory next to the GLM directory
        and moved into place only once everything has been written.
        """
        self._transition(PipelineState.PERSIST)
        self.glm_dir.parent.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=f".{self.subject_id}-", dir=self.glm_dir.parent))

        try:
            saved_files: Dict[str, Path] = {}
            if self.glm is not None:
                saved_files.update(self.glm.save_results(staging))

            self.design_matrix.to_csv(staging / "design_matrix.tsv", sep="\t", index_label="frame_time")
            saved_files["design_matrix"] = staging / "design_matrix.tsv"

            with open(staging / "model.json", "w") as f:
                json.dump(self._model_container(saved_files), f, indent=2)
            saved_files["model"] = staging / "model.json"

            spec_file = staging / f"{self.glm_name}.yaml"
            with open(spec_file, "w") as f:
                yaml.safe_dump(self.model.to_dict(), f, default_flow_style=False, sort_keys=False)
            saved_files["model_spec"] = spec_file

            self._swap_into_place(staging)
        finally:
            if staging.exists():
                shutil.rmtree(staging)

        return {name: self.glm_dir / path.name for name, path in saved_files.items()}

    def run(self) -> Dict[str, Any]:
        """
        Run the complete pipeline.

        Returns
        -------
        dict
            ``model`` (ModelSpec), ``design_matrix``, ``glm`` (None in
            design-only mode) and ``saved_files``.
        """
        try:
            self.resolve_params()
            self.validate_runs()
            self.adjust_onsets()
            self.assemble_model()
            self.build_design()

            if self.model.design_only:
                self._transition(PipelineState.DESIGN_ONLY)
                logger.info("Generating design matrix (design only)...")
            else:
                self.estimate()

            saved_files = self.persist()
        except Exception as e:
            logger.error(f"[EXCEPTION] {e}")
            self._transition(PipelineState.ABORTED)
            raise

        self._transition(PipelineState.DONE)

        logger.info(NICELINE)
        logger.info(f"GLM specification complete on subject: {self.subject_id}")
        logger.info(f"Parameters : {saved_files['model_spec']}")
        logger.info(f"Model      : {saved_files['model']}")

        return {
            "model": self.model,
            "design_matrix": self.design_matrix,
            "glm": self.glm,
            "saved_files": saved_files,
        }

    def summary(self) -> str:
        """Text summary of the pipeline state."""
        lines = ["GLM Pipeline Summary", "=" * 40]
        lines.append(f"Subject: {self.subject_id}")
        lines.append(f"GLM: {self.glm_name}")
        lines.append(f"State: {self.state.value}")
        if self.selection is not None:
            lines.append(f"Runs: {list(self.selection.include_run)} (TR={self.selection.tr})")
            lines.append(f"Modeled volumes: {self.selection.n_retained}")
        if self.design_matrix is not None:
            lines.append(f"Design shape: {self.design_matrix.shape}")
        return "\n".join(lines)
