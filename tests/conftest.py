"""Pytest configuration and shared fixtures."""

import tempfile
from pathlib import Path

import nibabel as nib
import numpy as np
import pytest
import yaml

SHAPE = (6, 6, 6)
NVOLS = [12, 10]
TR = 2.0


def _affine():
    affine = np.eye(4)
    affine[0, 0] = 2
    affine[1, 1] = 2
    affine[2, 2] = 2
    return affine


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def mask_file(temp_dir):
    """Create a mask covering the central voxels."""
    data = np.zeros(SHAPE, dtype=np.uint8)
    data[1:5, 1:5, 1:5] = 1
    filepath = temp_dir / "brainmask.nii.gz"
    nib.save(nib.Nifti1Image(data, _affine()), filepath)
    return filepath


@pytest.fixture
def functional_files(temp_dir):
    """Create one synthetic 4D run per entry of NVOLS."""
    rng = np.random.default_rng(0)
    files = []
    for i_run, nvols in enumerate(NVOLS, start=1):
        data = rng.normal(100, 5, SHAPE + (nvols,)).astype(np.float32)
        # Task-related signal every fourth volume
        data[2:4, 2:4, 2:4, ::4] += 20
        filepath = temp_dir / f"run{i_run}_bold.nii.gz"
        nib.save(nib.Nifti1Image(data, _affine()), filepath)
        files.append(filepath)
    return files


@pytest.fixture
def motion_files(temp_dir):
    """Create one realignment parameter file per run."""
    rng = np.random.default_rng(1)
    files = []
    for i_run, nvols in enumerate(NVOLS, start=1):
        filepath = temp_dir / f"rp_run{i_run}.txt"
        np.savetxt(filepath, rng.normal(0, 0.1, (nvols, 6)))
        files.append(filepath)
    return files


@pytest.fixture
def outlier_file(temp_dir):
    """Outlier volumes (0-based, full timeline): one per run."""
    filepath = temp_dir / "outliers.txt"
    np.savetxt(filepath, [3, 15], fmt="%d")
    return filepath


@pytest.fixture
def prep_dir(temp_dir, functional_files, motion_files, outlier_file):
    """Write a preprocessing parameter record next to the synthetic runs."""
    record = {
        "nses": len(NVOLS),
        "nvols": NVOLS,
        "tr": TR,
        "fmri": [f.name for f in functional_files],
        "ra": [f.name for f in motion_files],
        "outliers": outlier_file.name,
        "cleanupzip": False,
    }
    with open(temp_dir / "prep.yaml", "w") as f:
        yaml.safe_dump(record, f)
    return temp_dir


@pytest.fixture
def glm_params():
    """GLM parameters with one event, one block and one regressor."""
    total = sum(NVOLS)
    return {
        "glm_name": "task",
        "events": {
            "cue": {"onsets": [0, 4, 8, 12, 16, 20], "parametrics": {"rt": [1, 2, 3, 4, 5, 6]}},
        },
        "blocks": {
            "task": {"onsets": [2, 14], "durations": 3},
        },
        "regressors": {
            "drift": np.linspace(-1, 1, total).tolist(),
        },
    }
