"""Tests for the command-line interface."""

import json

import pytest
import yaml

from glmcraft.cli import create_parser, main, parse_include_run

from conftest import NVOLS, TR


@pytest.fixture
def glm_file(temp_dir, glm_params):
    """GLM parameter file with scan parameters."""
    params = dict(glm_params, nses=2, nvols=NVOLS, tr=TR, output_dir="analysis")
    filepath = temp_dir / "glm.yaml"
    with open(filepath, "w") as f:
        yaml.safe_dump(params, f)
    return filepath


class TestParser:
    """Tests for argument parsing."""

    def test_parse_arguments(self):
        """Options map to parser attributes."""
        args = create_parser().parse_args(
            ["s01", "-c", "glm.yaml", "--include-run", "1", "3", "--design-only", "-vv"]
        )

        assert args.subject_id == "s01"
        assert args.include_run == ["1", "3"]
        assert args.design_only is True
        assert args.verbose == 2

    def test_parse_include_run(self):
        """'all' or run numbers."""
        assert parse_include_run(None) is None
        assert parse_include_run(["all"]) == "all"
        assert parse_include_run(["ALL"]) == "all"
        assert parse_include_run(["2", "1"]) == [2, 1]

        with pytest.raises(ValueError):
            parse_include_run(["one"])


class TestMain:
    """Tests for the main entry point."""

    def test_init_config(self, temp_dir, capsys):
        """--init-config writes a template and exits."""
        main(["--init-config", str(temp_dir / "template")])

        assert (temp_dir / "template.yaml").exists()
        assert "Configuration file created" in capsys.readouterr().out

    def test_subject_required(self):
        """SUBJECT_ID is required for a run."""
        with pytest.raises(SystemExit) as excinfo:
            main([])
        assert excinfo.value.code == 2

    def test_design_only_run(self, glm_file, temp_dir, capsys):
        """A design-only run writes the model under the configured output dir."""
        main(["s01", "-c", str(glm_file), "--design-only", "--include-run", "2"])

        glm_dir = temp_dir / "analysis" / "task" / "s01"
        with open(glm_dir / "model.json") as f:
            container = json.load(f)

        assert container["include_run"] == [2]
        assert container["design_only"] is True
        assert "Design only" in capsys.readouterr().out

    def test_output_dir_override(self, glm_file, temp_dir):
        """-o overrides the configured output directory."""
        main(["s01", "-c", str(glm_file), "--design-only", "-o", str(temp_dir / "elsewhere")])

        assert (temp_dir / "elsewhere" / "task" / "s01" / "model.json").exists()

    def test_failure_exit_code(self, glm_file, capsys):
        """Failures exit with code 1 and a red message."""
        with pytest.raises(SystemExit) as excinfo:
            main(["s01", "-c", str(glm_file)])

        assert excinfo.value.code == 1
        assert "✗" in capsys.readouterr().err

    def test_invalid_include_run(self, glm_file):
        """Malformed run numbers are rejected."""
        with pytest.raises(SystemExit) as excinfo:
            main(["s01", "-c", str(glm_file), "--include-run", "first"])
        assert excinfo.value.code == 1

    def test_missing_config_file(self, temp_dir):
        """A missing configuration file exits with code 1."""
        with pytest.raises(SystemExit) as excinfo:
            main(["s01", "-c", str(temp_dir / "missing.yaml")])
        assert excinfo.value.code == 1
