"""
Configuration handling for GLMCraft.

This module handles:
- GLM parameter file parsing (YAML/JSON)
- Configuration validation
- Default values
"""

import copy
import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from glmcraft.errors import ConfigurationError

logger = logging.getLogger(__name__)

VALID_HRF_MODELS = [
    "spm",
    "spm + derivative",
    "spm + derivative + dispersion",
    "glover",
    "glover + derivative",
    "glover + derivative + dispersion",
]

RESERVED_COLUMNS = ["constant"]


# Default configuration values
DEFAULT_CONFIG = {
    # Model name (used for the output directory and parameter file)
    "glm_name": "glm",

    # Paths ("{sid}" is replaced by the subject identifier)
    "output_dir": "analysis",
    "prep_dir": None,
    "prep_name": "prep",

    # Scan parameters (loaded from the prep parameter file when absent)
    "nses": None,
    "nvols": None,
    "tr": None,

    # Runs to model: "all" or a list of 1-based run numbers
    "include_run": "all",

    # Model specification
    "events": {},
    "blocks": {},
    "regressors": {},

    # Prep-derived regressors
    "outliers": False,
    "nuisance": False,
    "move": False,

    # Estimation
    "mask": None,
    "demean": False,
    "design_only": False,
    "hrf_model": "spm",
    "noise_model": "ar1",

    # Verbosity
    "verbose": 1,
}


class Config:
    """
    Configuration manager for GLMCraft.

    Parameters
    ----------
    config_file : str or Path, optional
        Path to a GLM parameter file (YAML or JSON).
    **kwargs
        Additional configuration options to override defaults.

    Attributes
    ----------
    data : dict
        Configuration dictionary.
    """

    def __init__(
        self,
        config_file: Optional[Union[str, Path]] = None,
        **kwargs,
    ):
        # Start with defaults
        self.data = copy.deepcopy(DEFAULT_CONFIG)
        self.config_file = Path(config_file) if config_file is not None else None

        # Load from file if provided
        if config_file is not None:
            self.load_from_file(config_file)

        # Override with kwargs
        self._update_nested(self.data, kwargs)

        # Validate configuration
        self.validate()

    def _update_nested(self, base: Dict, updates: Dict) -> None:
        """Update nested dictionary with another dictionary."""
        for key, value in updates.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._update_nested(base[key], value)
            else:
                base[key] = value

    def update(self, overrides: Dict[str, Any]) -> None:
        """Apply overrides and re-validate."""
        self._update_nested(self.data, overrides)
        self.validate()

    def load_from_file(self, filepath: Union[str, Path]) -> None:
        """
        Load configuration from a YAML or JSON file.

        Parameters
        ----------
        filepath : str or Path
            Path to configuration file.
        """
        filepath = Path(filepath)

        if not filepath.exists():
            raise FileNotFoundError(f"Configuration file not found: {filepath}")

        logger.info(f"Loading configuration from: {filepath}")

        with open(filepath, "r") as f:
            if filepath.suffix == ".json":
                file_config = json.load(f)
            else:
                file_config = yaml.safe_load(f)

        if file_config is not None:
            if not isinstance(file_config, dict):
                raise ConfigurationError(f"Configuration file must contain a mapping: {filepath}")
            self._update_nested(self.data, file_config)

    def save_to_file(self, filepath: Union[str, Path]) -> None:
        """
        Save configuration to a YAML or JSON file.

        Parameters
        ----------
        filepath : str or Path
            Path to output file.
        """
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)

        with open(filepath, "w") as f:
            if filepath.suffix in [".yaml", ".yml"]:
                yaml.safe_dump(self.data, f, default_flow_style=False, sort_keys=False)
            else:
                json.dump(self.data, f, indent=2)

        logger.info(f"Configuration saved to: {filepath}")

    def _validate_conditions(self, section: str, errors: List[str]) -> None:
        conditions = self.data.get(section) or {}
        if not isinstance(conditions, dict):
            errors.append(f"{section} must be a mapping of condition name -> onsets")
            return

        for name, entry in conditions.items():
            if not isinstance(entry, dict):
                entry = {"onsets": entry}
            onsets = entry.get("onsets")
            if onsets is None:
                errors.append(f"{section}.{name} has no onsets")
                continue
            onsets = onsets if isinstance(onsets, list) else [onsets]
            if any(not isinstance(o, int) or isinstance(o, bool) or o < 0 for o in onsets):
                errors.append(f"{section}.{name} onsets must be non-negative volume indices")
            durations = entry.get("durations", 0)
            if isinstance(durations, list) and len(durations) != len(onsets):
                errors.append(
                    f"{section}.{name} has {len(onsets)} onsets but {len(durations)} durations"
                )
            for pname, values in (entry.get("parametrics") or {}).items():
                if not isinstance(values, list) or len(values) != len(onsets):
                    errors.append(
                        f"{section}.{name} parametric '{pname}' must have one value per onset"
                    )

    def _column_names(self) -> List[str]:
        names = []
        for section in ("events", "blocks"):
            for name, entry in (self.data.get(section) or {}).items():
                names.append(str(name))
                if isinstance(entry, dict):
                    names.extend(f"{name}x{p}" for p in (entry.get("parametrics") or {}))
        names.extend(str(name) for name in (self.data.get("regressors") or {}))
        return names

    def validate(self) -> None:
        """
        Validate the configuration.

        Raises
        ------
        ConfigurationError
            If configuration is invalid.
        """
        errors = []

        # Validate runs to model
        include_run = self.data["include_run"]
        if isinstance(include_run, str):
            if include_run.strip().lower() != "all":
                errors.append(f"Invalid include_run: {include_run}. Must be 'all' or a list of run numbers")
        else:
            runs = include_run if isinstance(include_run, list) else [include_run]
            if not runs or any(not isinstance(r, int) or isinstance(r, bool) or r < 1 for r in runs):
                errors.append(f"Invalid include_run: {include_run}. Run numbers must be positive integers")

        # Validate models
        if self.data["hrf_model"] not in VALID_HRF_MODELS:
            errors.append(f"Invalid hrf_model: {self.data['hrf_model']}. Must be one of {VALID_HRF_MODELS}")

        noise_model = str(self.data["noise_model"])
        if noise_model != "ols" and not re.fullmatch(r"ar[1-9][0-9]*", noise_model):
            errors.append(f"Invalid noise_model: {noise_model}. Must be 'ols' or 'arN' (e.g. 'ar1')")

        # Validate conditions and regressors
        for section in ("events", "blocks"):
            self._validate_conditions(section, errors)

        regressors = self.data.get("regressors") or {}
        if not isinstance(regressors, dict):
            errors.append("regressors must be a mapping of regressor name -> values")

        names = self._column_names()
        duplicated = sorted({n for n in names if names.count(n) > 1})
        if duplicated:
            errors.append(f"Condition and regressor names must be unique, duplicated: {duplicated}")
        reserved = [n for n in names if n in RESERVED_COLUMNS]
        if reserved:
            errors.append(f"Reserved column names cannot be used: {reserved}")

        # Scan parameters are all-or-none
        scan_params = [self.data.get(key) is not None for key in ("nses", "nvols", "tr")]
        if any(scan_params) and not all(scan_params):
            errors.append("nses, nvols and tr must be given together (or all loaded from prep)")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors))

    def has_scan_params(self) -> bool:
        """Whether nses, nvols and tr are all specified."""
        return all(self.data.get(key) is not None for key in ("nses", "nvols", "tr"))

    def resolve_path(self, key: str, subject_id: str) -> Optional[Path]:
        """
        Get a path setting with the "{sid}" placeholder expanded.

        Relative paths are resolved against the configuration file directory
        when the configuration was loaded from a file.
        """
        value = self.get(key)
        if value is None:
            return None
        path = Path(str(value).replace("{sid}", subject_id))
        if not path.is_absolute() and self.config_file is not None:
            path = self.config_file.parent / path
        return path

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value by key (supports dot notation).

        Parameters
        ----------
        key : str
            Configuration key (e.g., "events.faces").
        default : any
            Default value if key not found.

        Returns
        -------
        any
            Configuration value.
        """
        keys = key.split(".")
        value = self.data

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def set(self, key: str, value: Any) -> None:
        """
        Set a configuration value by key (supports dot notation).

        Parameters
        ----------
        key : str
            Configuration key (e.g., "events.faces").
        value : any
            Value to set.
        """
        keys = key.split(".")
        data = self.data

        for k in keys[:-1]:
            if k not in data:
                data[k] = {}
            data = data[k]

        data[keys[-1]] = value

    def __getitem__(self, key: str) -> Any:
        """Allow dictionary-style access."""
        return self.data[key]

    def __setitem__(self, key: str, value: Any) -> None:
        """Allow dictionary-style assignment."""
        self.data[key] = value

    def __contains__(self, key: str) -> bool:
        """Check if key exists."""
        return key in self.data

    def to_dict(self) -> Dict:
        """Return configuration as dictionary."""
        return copy.deepcopy(self.data)

    def summary(self) -> str:
        """
        Get a text summary of the configuration.

        Returns
        -------
        str
            Configuration summary.
        """
        lines = ["Configuration Summary", "=" * 40]

        lines.append(f"\nGLM name: {self.data['glm_name']}")
        lines.append(f"Included runs: {self.data['include_run']}")

        for section in ("events", "blocks", "regressors"):
            entries = self.data.get(section) or {}
            if entries:
                lines.append(f"\n{section.capitalize()}: {len(entries)}")
                for name in entries:
                    lines.append(f"  - {name}")

        toggles = [name for name in ("outliers", "nuisance", "move") if self.data.get(name)]
        lines.append(f"\nPrep regressors: {', '.join(toggles) if toggles else 'none'}")

        lines.append(f"\nHRF model: {self.data['hrf_model']}")
        lines.append(f"Noise model: {self.data['noise_model']}")
        lines.append(f"Mask: {self.data['mask']}")
        lines.append(f"Demean: {self.data['demean']}")
        lines.append(f"Design only: {self.data['design_only']}")

        return "\n".join(lines)


def load_config(
    config_file: Optional[Union[str, Path]] = None,
    **kwargs,
) -> Config:
    """
    Load configuration from file and/or keyword arguments.

    Parameters
    ----------
    config_file : str or Path, optional
        Path to configuration file.
    **kwargs
        Additional configuration options.

    Returns
    -------
    Config
        Configuration object.
    """
    return Config(config_file=config_file, **kwargs)


def create_default_config(output_path: Union[str, Path]) -> Path:
    """
    Create a documented default GLM parameter file.

    Parameters
    ----------
    output_path : str or Path
        Path for the output configuration file.

    Returns
    -------
    Path
        Path to created configuration file.
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    template = """# ===============================================================================
# GLMCraft GLM Parameter File
# ===============================================================================
# Parameters for a first-level GLM. Onsets and durations are given in volumes
# (0-based) on the concatenated timeline of ALL acquired runs, even when only
# some runs are modeled (see include_run).
#
# USAGE:
#   glmcraft s01 --config this_file.yaml
# ===============================================================================

# -------------------------------------------------------------------------------
# NAMES AND PATHS
# -------------------------------------------------------------------------------
# "{sid}" in a path is replaced by the subject identifier. Relative paths are
# resolved against the directory of this file.

# Model name. Outputs go to <output_dir>/<glm_name>/<sid>/
glm_name: glm

# Root directory for GLM outputs
# CLI equivalent: --output-dir / -o
output_dir: analysis

# Directory with the subject's preprocessing outputs
# Example: prep_dir: data/{sid}/func
prep_dir: null

# Name of the saved preprocessing parameter file (prep_dir/<prep_name>.yaml or .json)
# It provides nses, nvols, tr, ra (motion files), fmri (functional files),
# cleanupzip and optionally outliers (file of 0-based outlier volumes).
prep_name: prep

# -------------------------------------------------------------------------------
# SCAN PARAMETERS
# -------------------------------------------------------------------------------
# Leave null to load them from the preprocessing parameter file. They must be
# given here for design-only models without preprocessing.
# Examples:
#   nses: 2
#   nvols: [180, 180]     # or a single value for all runs
#   tr: 2.5               # or one value per run
nses: null
nvols: null
tr: null

# Runs to model: "all" or a list of 1-based run numbers
# CLI equivalent: --include-run
# Example: include_run: [1, 3]
include_run: all

# -------------------------------------------------------------------------------
# MODEL
# -------------------------------------------------------------------------------
# Events: condition -> onsets (list) or mapping with onsets, durations
# (scalar or list, default 0) and parametrics (name -> one value per onset).
# Example:
#   events:
#     faces:
#       onsets: [10, 40, 70]
#       parametrics:
#         rt: [0.8, 1.1, 0.9]
#     houses: [25, 55, 85]
events: {}

# Blocks: same format as events; durations model box-cars
# Example:
#   blocks:
#     task:
#       onsets: [0, 40]
#       durations: 20
blocks: {}

# Regressors: name -> one value per acquired volume (not convolved)
regressors: {}

# Prep-derived regressors (all named with the "r-" prefix)
outliers: false   # spike regressors for outlier volumes
nuisance: false   # run means and linear trends
move: false       # six realignment parameters

# -------------------------------------------------------------------------------
# ESTIMATION
# -------------------------------------------------------------------------------
# Explicit mask image (required unless design_only is true)
# CLI equivalent: --mask
mask: null

# Demean the regressors of interest before estimation
# CLI equivalent: --demean
demean: false

# Only build and save the design matrix (no data loaded, no estimation)
# CLI equivalent: --design-only
design_only: false

# Hemodynamic response model
# Valid options: spm, spm + derivative, spm + derivative + dispersion,
#                glover, glover + derivative, glover + derivative + dispersion
hrf_model: spm

# Temporal noise model: ols or arN (e.g. ar1)
noise_model: ar1

# Verbosity (0: warnings, 1: info, 2: debug)
# CLI equivalent: --verbose / -v
verbose: 1
"""

    with open(output_path, 'w') as f:
        f.write(template)

    logger.info(f"Configuration file created: {output_path}")
    return output_path
