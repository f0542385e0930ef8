"""
Onset adjustment for partially modeled sessions.

Onsets always describe the full concatenated timeline of all acquired runs.
When only some runs are modeled, onsets falling in excluded runs are dropped
and the remaining onsets are re-indexed onto the shortened timeline.
Durations and parametric modulators follow their onsets; continuous
regressors are filtered volume by volume.
"""

import logging
from typing import Tuple

import numpy as np

from glmcraft.core.model_spec import ModelSpec, OnsetSpec, Parametric, RegressorSpec
from glmcraft.errors import ConfigurationError

logger = logging.getLogger(__name__)


def _dense(n_volumes: int, onsets: np.ndarray, values) -> np.ndarray:
    """Place ``values`` at the onset volumes of an otherwise zero vector."""
    dense = np.zeros(n_volumes, dtype=float)
    dense[onsets] = values
    return dense


def adjust_onsets(spec: OnsetSpec, volume_index: np.ndarray) -> OnsetSpec:
    """
    Re-index one condition's onsets onto the retained-volume timeline.

    Parameters
    ----------
    spec : OnsetSpec
        Condition with onsets on the full timeline.
    volume_index : np.ndarray of bool
        True for retained volumes.

    Returns
    -------
    OnsetSpec
        The same object when nothing is excluded, otherwise an adjusted copy.
    """
    volume_index = np.asarray(volume_index, dtype=bool)
    if np.all(volume_index):
        return spec

    n_volumes = volume_index.shape[0]
    onsets = np.asarray(spec.onsets, dtype=int)
    if onsets.size and (onsets.min() < 0 or onsets.max() >= n_volumes):
        raise ConfigurationError(
            f"Condition '{spec.name}' has onsets outside the {n_volumes} acquired volumes"
        )

    markers = _dense(n_volumes, onsets, 1.0)[volume_index]
    durations = _dense(n_volumes, onsets, spec.durations)[volume_index]
    kept = markers == 1

    parametrics = tuple(
        Parametric(p.name, tuple(float(v) for v in _dense(n_volumes, onsets, p.values)[volume_index][kept]))
        for p in spec.parametrics
    )

    new_onsets = tuple(int(i) for i in np.flatnonzero(kept))
    dropped = len(set(spec.onsets)) - len(new_onsets)
    if dropped:
        logger.debug(f"Dropped {dropped} onset(s) of '{spec.name}' in excluded runs")

    return OnsetSpec(
        name=spec.name,
        onsets=new_onsets,
        durations=tuple(float(d) for d in durations[kept]),
        parametrics=parametrics,
        kind=spec.kind,
    )


def adjust_regressor(spec: RegressorSpec, volume_index: np.ndarray) -> RegressorSpec:
    """Keep only the regressor values of retained volumes."""
    volume_index = np.asarray(volume_index, dtype=bool)
    if len(spec.values) != volume_index.shape[0]:
        raise ConfigurationError(
            f"Regressor '{spec.name}' has {len(spec.values)} values but the "
            f"runs contain {volume_index.shape[0]} volumes"
        )
    if np.all(volume_index):
        return spec
    values = np.asarray(spec.values, dtype=float)[volume_index]
    return RegressorSpec(spec.name, tuple(float(v) for v in values))


def _adjust_all(specs: Tuple[OnsetSpec, ...], volume_index) -> Tuple[OnsetSpec, ...]:
    return tuple(adjust_onsets(spec, volume_index) for spec in specs)


def adjust_model(model: ModelSpec, volume_index: np.ndarray) -> ModelSpec:
    """
    Adjust every condition and regressor of a model for the modeled runs.

    Returns the model unchanged when no volume is excluded.
    """
    volume_index = np.asarray(volume_index, dtype=bool)
    regressors = tuple(adjust_regressor(r, volume_index) for r in model.regressors)

    if np.all(volume_index):
        return model.updated(regressors=regressors)

    logger.info(
        "Adjusting onsets, durations, parametrics and/or regressors for the "
        f"included runs: {list(model.include_run) if model.include_run != 'all' else 'all'}"
    )

    return model.updated(
        events=_adjust_all(model.events, volume_index),
        blocks=_adjust_all(model.blocks, volume_index),
        regressors=regressors,
        excluded_volumes=int(np.count_nonzero(~volume_index)),
    )
