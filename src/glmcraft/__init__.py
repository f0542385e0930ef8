"""
GLMCraft: First-level fMRI GLM specification and estimation tool.

A pip-installable Python tool that builds a single subject's first-level
design matrix from events, blocks, parametric modulators and regressors,
and estimates it with nilearn.
"""

__version__ = "0.1.0"
__author__ = "GLMCraft Contributors"

from glmcraft.core.design_matrix import DesignAssembler
from glmcraft.core.glm import FirstLevelGLM
from glmcraft.core.model_spec import ModelSpec, OnsetSpec, RegressorSpec, RunSet
from glmcraft.core.runs import select_runs
from glmcraft.core.stats import compute_stat
from glmcraft.pipeline import GLMPipeline

__all__ = [
    "DesignAssembler",
    "FirstLevelGLM",
    "ModelSpec",
    "OnsetSpec",
    "RegressorSpec",
    "RunSet",
    "select_runs",
    "compute_stat",
    "GLMPipeline",
    "__version__",
]
