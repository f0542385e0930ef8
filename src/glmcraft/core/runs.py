"""
Run selection for first-level GLM analysis.

This module handles:
- Resolving which runs are modeled ("all" or 1-based run indices)
- Building the volume index over the concatenated timeline
- Validating that all modeled runs share one TR
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Tuple, Union

import numpy as np

from glmcraft.core.model_spec import RunSet
from glmcraft.errors import ConfigurationError

logger = logging.getLogger(__name__)

ALL_RUNS = "all"


@dataclass(frozen=True)
class RunSelection:
    """
    Outcome of run selection.

    Attributes
    ----------
    volume_index : np.ndarray of bool
        One entry per volume of the full concatenated timeline; True for
        volumes belonging to modeled runs.
    all_runs : RunSet
        Every acquired run.
    runs : RunSet
        Modeled runs, in original relative order.
    include_run : tuple of int
        1-based indices of the modeled runs.
    """

    volume_index: np.ndarray
    all_runs: RunSet
    runs: RunSet
    include_run: Tuple[int, ...]

    @property
    def tr(self) -> float:
        """TR shared by all modeled runs."""
        return self.runs.trs[0]

    @property
    def excludes_volumes(self) -> bool:
        return not bool(np.all(self.volume_index))

    @property
    def n_retained(self) -> int:
        return int(np.count_nonzero(self.volume_index))


def _normalize_include_run(include_run) -> Union[str, Tuple[int, ...]]:
    if isinstance(include_run, str):
        if include_run.strip().lower() == ALL_RUNS:
            return ALL_RUNS
        raise ConfigurationError(
            f"include_run must be '{ALL_RUNS}' or a list of run numbers, got '{include_run}'"
        )
    if isinstance(include_run, (int, np.integer)):
        include_run = [include_run]
    return tuple(int(r) for r in include_run)


def build_volume_index(runs: RunSet, include_run: Iterable[int]) -> np.ndarray:
    """Boolean mask over all volumes marking those in the included runs."""
    included = set(include_run)
    return np.concatenate([
        np.full(run.nvols, (i_run + 1) in included, dtype=bool)
        for i_run, run in enumerate(runs)
    ])


def select_runs(include_run, runs: RunSet) -> RunSelection:
    """
    Resolve the modeled runs and their volume index.

    Parameters
    ----------
    include_run : "all" or sequence of int
        Runs to model (1-based). "all" keeps every run without bound checks.
    runs : RunSet
        All acquired runs.

    Returns
    -------
    RunSelection
        Volume index, reduced RunSet and resolved run indices.

    Raises
    ------
    ConfigurationError
        If a requested run exceeds the available runs or the modeled runs
        do not share one TR.
    """
    for i_run, run in enumerate(runs, start=1):
        logger.info(f"Run:{i_run}, nvols={run.nvols}, TR={run.tr:.1f}")

    include_run = _normalize_include_run(include_run)

    if include_run == ALL_RUNS:
        resolved = tuple(range(1, len(runs) + 1))
        volume_index = np.ones(runs.total_volumes, dtype=bool)
        selected = runs
    else:
        if not include_run:
            raise ConfigurationError("include_run must list at least one run")
        if max(include_run) > len(runs):
            msg = f"Included run ({max(include_run)}) exceeds available runs ({len(runs)})"
            logger.error(f"[EXCEPTION] {msg}")
            raise ConfigurationError(msg)
        if min(include_run) < 1:
            raise ConfigurationError(f"Run numbers are 1-based, got {min(include_run)}")

        resolved = tuple(sorted(set(include_run)))
        volume_index = build_volume_index(runs, resolved)
        selected = RunSet(tuple(runs.runs[i - 1] for i in resolved))

    if len(set(selected.trs)) > 1:
        trs = " ".join(f"Run {tr:.1f}" for tr in selected.trs)
        msg = f"Modeled runs do not all have the same TR: inconsistent TR across modeled runs ({trs})"
        logger.error(f"[EXCEPTION] {msg}")
        raise ConfigurationError(msg)

    description = " ".join(f"{i}(nvols={run.nvols})" for i, run in zip(resolved, selected))
    logger.info(f"GLM will be calculated on runs: {description}")

    return RunSelection(
        volume_index=volume_index,
        all_runs=runs,
        runs=selected,
        include_run=resolved,
    )
