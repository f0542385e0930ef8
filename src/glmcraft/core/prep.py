"""
Access to preprocessing-stage outputs.

This module handles:
- Loading the saved preprocessing parameter record of a subject
- Outlier spike regressors
- Run nuisance regressors (run means and linear trends)
- Motion (realignment) regressors
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
import yaml

from glmcraft.core.runs import RunSelection
from glmcraft.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Columns of nuisance-type regressors start with this prefix
NUISANCE_PREFIX = "r-"

MOTION_COLUMNS = ["x", "y", "z", "pitch", "roll", "yaw"]

PREP_SUFFIXES = (".yaml", ".yml", ".json")


@dataclass(frozen=True)
class PrepParams:
    """Scan parameters and file lists saved by preprocessing."""

    nses: Optional[int]
    nvols: Optional[Union[int, List[int]]]
    tr: Optional[Union[float, List[float]]]
    functional_files: Tuple[Path, ...] = ()
    motion_files: Tuple[Path, ...] = ()
    outlier_file: Optional[Path] = None
    cleanupzip: bool = False
    source: Optional[Path] = None


def _as_paths(base: Path, value: Any) -> Tuple[Path, ...]:
    if value is None:
        return ()
    if isinstance(value, (str, Path)):
        value = [value]
    return tuple(Path(v) if Path(v).is_absolute() else base / v for v in value)


def find_prep_file(prep_dir: Union[str, Path], prep_name: str) -> Optional[Path]:
    """Return the first existing ``<prep_dir>/<prep_name>.{yaml,yml,json}``."""
    prep_dir = Path(prep_dir)
    for suffix in PREP_SUFFIXES:
        candidate = prep_dir / f"{prep_name}{suffix}"
        if candidate.exists():
            return candidate
    return None


def load_prep_params(
    prep_dir: Optional[Union[str, Path]],
    prep_name: Optional[str],
    require_scan_params: bool = True,
) -> Optional[PrepParams]:
    """
    Load a subject's preprocessing parameter record.

    Parameters
    ----------
    prep_dir : str or Path, optional
        Directory holding the subject's preprocessing outputs.
    prep_name : str, optional
        Name of the preprocessing parameter file (without extension).
    require_scan_params : bool
        Whether the record must provide nses, nvols and tr. When False
        (the scan parameters come from elsewhere) missing values are
        logged and left as None.

    Returns
    -------
    PrepParams or None
        None when no record exists.

    Raises
    ------
    ConfigurationError
        If the record exists but lacks nses, nvols or tr while
        ``require_scan_params`` is set.
    """
    if prep_dir is None or prep_name is None:
        return None

    filepath = find_prep_file(prep_dir, prep_name)
    if filepath is None:
        return None

    logger.info(f"Loading additional parameters from: {filepath.name}")

    with open(filepath, "r") as f:
        if filepath.suffix == ".json":
            record: Dict[str, Any] = json.load(f)
        else:
            record = yaml.safe_load(f) or {}

    missing = [key for key in ("nses", "nvols", "tr") if record.get(key) is None]
    if missing and require_scan_params:
        raise ConfigurationError(
            f"Preprocessing parameter file {filepath} is missing: {', '.join(missing)}"
        )
    if missing:
        logger.info(f"Preprocessing parameter file lacks {', '.join(missing)}; using GLM parameters")

    base = filepath.parent
    outlier_file = record.get("outliers")

    return PrepParams(
        nses=int(record["nses"]) if record.get("nses") is not None else None,
        nvols=record.get("nvols"),
        tr=record.get("tr"),
        functional_files=_as_paths(base, record.get("fmri")),
        motion_files=_as_paths(base, record.get("ra")),
        outlier_file=_as_paths(base, outlier_file)[0] if outlier_file else None,
        cleanupzip=bool(record.get("cleanupzip", False)),
        source=filepath,
    )


class PrepSignals:
    """
    Nuisance signals derived from preprocessing outputs.

    All regressors are computed on the full concatenated timeline and then
    restricted to the retained volumes of ``selection``.

    Parameters
    ----------
    selection : RunSelection
        Modeled runs and their volume index.
    motion_files : sequence of Path
        One realignment parameter file per acquired run (6 columns).
    outlier_file : Path, optional
        Text file listing 0-based outlier volumes of the full timeline.
    """

    def __init__(
        self,
        selection: RunSelection,
        motion_files: Tuple[Path, ...] = (),
        outlier_file: Optional[Path] = None,
    ):
        self.selection = selection
        self.motion_files = tuple(Path(f) for f in motion_files)
        self.outlier_file = Path(outlier_file) if outlier_file else None

    def _frame(self, data: Dict[str, np.ndarray]) -> pd.DataFrame:
        return pd.DataFrame(data, index=range(self.selection.n_retained), dtype=float)

    def outlier_regressors(self) -> pd.DataFrame:
        """One spike column per outlier volume falling in a modeled run."""
        if self.outlier_file is None:
            raise ConfigurationError("Outlier regressors requested but no outlier file is available")
        if not self.outlier_file.exists():
            raise FileNotFoundError(f"Outlier file not found: {self.outlier_file}")

        outliers = np.loadtxt(self.outlier_file, dtype=int, ndmin=1)
        volume_index = self.selection.volume_index
        n_total = volume_index.shape[0]
        if outliers.size and (outliers.min() < 0 or outliers.max() >= n_total):
            raise ConfigurationError(
                f"Outlier volumes in {self.outlier_file} exceed the {n_total} acquired volumes"
            )

        # Position of each acquired volume on the retained timeline
        positions = np.cumsum(volume_index) - 1
        columns = {}
        for volume in sorted(set(outliers.tolist())):
            if not volume_index[volume]:
                continue
            spike = np.zeros(self.selection.n_retained)
            spike[positions[volume]] = 1.0
            columns[f"{NUISANCE_PREFIX}outlier{len(columns) + 1}"] = spike

        logger.info(f"Adding {len(columns)} outlier regressor(s)")
        return self._frame(columns)

    def nuisance_regressors(self) -> pd.DataFrame:
        """Run-mean (all but the last run) and per-run linear trend regressors."""
        runs = self.selection.runs
        n_retained = self.selection.n_retained
        columns = {}

        start = 0
        bounds = []
        for run in runs:
            bounds.append((start, start + run.nvols))
            start += run.nvols

        for i_run, (first, last) in enumerate(bounds[:-1], start=1):
            column = np.zeros(n_retained)
            column[first:last] = 1.0
            columns[f"{NUISANCE_PREFIX}run{i_run}"] = column

        for i_run, (first, last) in enumerate(bounds, start=1):
            column = np.zeros(n_retained)
            ramp = np.arange(last - first, dtype=float)
            column[first:last] = ramp - ramp.mean()
            columns[f"{NUISANCE_PREFIX}trend{i_run}"] = column

        logger.info(f"Adding {len(columns)} nuisance regressor(s) for {len(runs)} run(s)")
        return self._frame(columns)

    def motion_regressors(self) -> pd.DataFrame:
        """Six realignment parameters concatenated across runs."""
        all_runs = self.selection.all_runs
        if len(self.motion_files) != len(all_runs):
            raise ConfigurationError(
                f"Motion regressors requested but {len(self.motion_files)} motion "
                f"file(s) were found for {len(all_runs)} run(s)"
            )

        blocks = []
        for motion_file, run in zip(self.motion_files, all_runs):
            if not motion_file.exists():
                raise FileNotFoundError(f"Motion parameter file not found: {motion_file}")
            params = np.loadtxt(motion_file, ndmin=2)
            if params.shape != (run.nvols, len(MOTION_COLUMNS)):
                raise ConfigurationError(
                    f"Motion file {motion_file} has shape {params.shape}, expected "
                    f"({run.nvols}, {len(MOTION_COLUMNS)})"
                )
            blocks.append(params)

        motion = np.vstack(blocks)[self.selection.volume_index]
        logger.info("Adding motion regressors")
        return self._frame({
            f"{NUISANCE_PREFIX}{name}": motion[:, i] for i, name in enumerate(MOTION_COLUMNS)
        })
