"""
Command-line interface for GLMCraft.

This module provides the CLI entry point for specifying and estimating
a first-level GLM for one subject.
"""

import argparse
import logging
import sys
import textwrap
from pathlib import Path
from typing import List, Optional, Union

from glmcraft import __version__
from glmcraft.config import Config, create_default_config
from glmcraft.pipeline import GLMPipeline

logger = logging.getLogger(__name__)


class Colors:
    """ANSI color codes for terminal output."""
    HEADER = '\033[95m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    BOLD = '\033[1m'
    UNDERLINE = '\033[4m'
    END = '\033[0m'


class ColoredHelpFormatter(argparse.RawDescriptionHelpFormatter):
    """Custom formatter with colored section headers."""

    def __init__(self, prog, indent_increment=2, max_help_position=40, width=100):
        super().__init__(prog, indent_increment, max_help_position, width)

    def _format_usage(self, usage, actions, groups, prefix):
        if prefix is None:
            prefix = f'{Colors.BOLD}Usage:{Colors.END} '
        return super()._format_usage(usage, actions, groups, prefix)

    def start_section(self, heading):
        if heading:
            heading = f'{Colors.BOLD}{Colors.CYAN}{heading}{Colors.END}'
        super().start_section(heading)


def create_parser() -> argparse.ArgumentParser:
    """Create command-line argument parser."""

    description = textwrap.dedent(f"""
    {Colors.BOLD}{Colors.GREEN}╔══════════════════════════════════════════════════════════════════════════════╗
    ║                     GLMCraft v{__version__:<59}║
    ║                    First-Level fMRI GLM Specification Tool                   ║
    ╚══════════════════════════════════════════════════════════════════════════════╝{Colors.END}

    {Colors.BOLD}Description:{Colors.END}
      GLMCraft builds and estimates a first-level general linear model for one
      subject's functional runs, from events, blocks, parametric modulators and
      user regressors declared in a GLM parameter file.

    {Colors.BOLD}Workflow:{Colors.END}
      1. Resolve scan parameters (GLM file or saved preprocessing parameters)
      2. Select the modeled runs and check their TR
      3. Re-index onsets and regressors when runs are excluded
      4. Build the design matrix (events, blocks, regressors, nuisance)
      5. Estimate parameters within an explicit mask (unless --design-only)
      6. Save the model container and its specification
    """)

    epilog = textwrap.dedent(f"""
    {Colors.BOLD}{Colors.GREEN}═══════════════════════════════════════════════════════════════════════════════{Colors.END}
    {Colors.BOLD}EXAMPLES{Colors.END}
    {Colors.GREEN}═══════════════════════════════════════════════════════════════════════════════{Colors.END}

    {Colors.BOLD}Configuration File:{Colors.END}

      {Colors.YELLOW}# Generate a GLM parameter template{Colors.END}
      glmcraft --init-config glm.yaml

      {Colors.YELLOW}# Estimate the model for one subject{Colors.END}
      glmcraft s01 -c glm.yaml

    {Colors.BOLD}Run Selection:{Colors.END}

      {Colors.YELLOW}# Model runs 1 and 3 only{Colors.END}
      glmcraft s01 -c glm.yaml --include-run 1 3

    {Colors.BOLD}Design Only:{Colors.END}

      {Colors.YELLOW}# Build and save the design matrix without estimation{Colors.END}
      glmcraft s01 -c glm.yaml --design-only -o /data/analysis

    {Colors.BOLD}{Colors.GREEN}═══════════════════════════════════════════════════════════════════════════════{Colors.END}
    {Colors.BOLD}MORE INFORMATION{Colors.END}
    {Colors.GREEN}═══════════════════════════════════════════════════════════════════════════════{Colors.END}

      Version:        {__version__}
    """)

    parser = argparse.ArgumentParser(
        prog="glmcraft",
        description=description,
        epilog=epilog,
        formatter_class=ColoredHelpFormatter,
        add_help=False,
    )

    # =========================================================================
    # REQUIRED ARGUMENTS
    # =========================================================================
    required = parser.add_argument_group(
        f'{Colors.BOLD}Required Arguments{Colors.END}'
    )

    required.add_argument(
        "subject_id",
        nargs="?",
        metavar="SUBJECT_ID",
        help="Subject identifier (e.g., 's01'). Expands '{sid}' in configured paths.",
    )

    # =========================================================================
    # GENERAL OPTIONS
    # =========================================================================
    general = parser.add_argument_group(
        f'{Colors.BOLD}General Options{Colors.END}'
    )

    general.add_argument(
        "-h", "--help",
        action="help",
        default=argparse.SUPPRESS,
        help="Show this help message and exit.",
    )

    general.add_argument(
        "--version",
        action="version",
        version=f"glmcraft {__version__}",
        help="Show program version and exit.",
    )

    general.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Enable verbose output (can be specified multiple times).",
    )

    general.add_argument(
        "-c", "--config",
        type=Path,
        metavar="FILE",
        help="Path to GLM parameter file (.json, .yaml, or .yml). "
             "CLI arguments override file settings.",
    )

    general.add_argument(
        "--init-config",
        type=Path,
        metavar="FILE",
        help="Generate a GLM parameter template and exit.",
    )

    general.add_argument(
        "-o", "--output-dir",
        type=Path,
        metavar="PATH",
        dest="output_dir",
        help="Root output directory; results go to OUTPUT_DIR/<glm_name>/<SUBJECT_ID>.",
    )

    # =========================================================================
    # MODEL OPTIONS
    # =========================================================================
    model = parser.add_argument_group(
        f'{Colors.BOLD}Model Options{Colors.END}'
    )

    model.add_argument(
        "--include-run",
        nargs="+",
        metavar="RUN",
        dest="include_run",
        help="Runs to model: 'all' or 1-based run numbers (e.g., 1 3).",
    )

    model.add_argument(
        "--design-only",
        action="store_true",
        dest="design_only",
        help="Build and save the design matrix without estimating parameters.",
    )

    model.add_argument(
        "--demean",
        action="store_true",
        help="Demean the regressors of interest before estimation.",
    )

    model.add_argument(
        "--mask",
        type=Path,
        metavar="PATH",
        help="Explicit mask image used for estimation.",
    )

    return parser


def parse_include_run(values: Optional[List[str]]) -> Optional[Union[str, List[int]]]:
    """
    Parse --include-run values into "all" or a list of run numbers.

    Raises
    ------
    ValueError
        If a value is neither "all" nor an integer.
    """
    if not values:
        return None
    if len(values) == 1 and values[0].lower() == "all":
        return "all"
    try:
        return [int(v) for v in values]
    except ValueError:
        raise ValueError(f"--include-run expects 'all' or run numbers, got: {' '.join(values)}")


def main(argv: Optional[List[str]] = None):
    """Main entry point for CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    # Handle --init-config flag
    if args.init_config:
        output_path = Path(args.init_config)
        if not output_path.suffix:
            output_path = output_path.with_suffix(".yaml")
        create_default_config(output_path)
        print(f"{Colors.GREEN}✓ Configuration file created: {output_path}{Colors.END}")
        return

    if not args.subject_id:
        parser.error("SUBJECT_ID is required unless --init-config is given")

    # Set up logging
    log_level = logging.WARNING - (args.verbose * 10)
    logging.basicConfig(
        level=max(log_level, logging.DEBUG),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    logging.getLogger("nibabel").setLevel(logging.WARNING)

    print(f"{Colors.BOLD}{Colors.GREEN}GLMCraft v{__version__}{Colors.END}")
    print("=" * 40)

    cfg = None
    if args.config:
        try:
            cfg = Config(config_file=args.config)
            if args.verbose > 0:
                print(f"Using GLM parameters from: {args.config}")
        except Exception as e:
            print(f"{Colors.RED}✗ Failed to load config file: {e}{Colors.END}", file=sys.stderr)
            sys.exit(1)

    # Build configuration overrides from CLI options
    config_overrides = {"verbose": args.verbose}

    try:
        include_run = parse_include_run(args.include_run)
    except ValueError as e:
        print(f"{Colors.RED}✗ Error: {e}{Colors.END}", file=sys.stderr)
        sys.exit(1)

    if include_run is not None:
        config_overrides["include_run"] = include_run
    if args.design_only:
        config_overrides["design_only"] = True
    if args.demean:
        config_overrides["demean"] = True
    if args.mask:
        config_overrides["mask"] = str(args.mask.resolve())

    try:
        if cfg:
            cfg.update(config_overrides)
        else:
            cfg = Config(**config_overrides)

        pipeline = GLMPipeline(
            subject_id=args.subject_id,
            config=cfg,
            output_dir=args.output_dir,
        )
        results = pipeline.run()

        print(f"\n{Colors.GREEN}✓ GLM specification completed for subject {args.subject_id}{Colors.END}")
        print(f"  Results saved to: {pipeline.glm_dir}")
        if results["glm"] is None:
            print("  Design only: parameters were not estimated")

    except KeyboardInterrupt:
        print(f"\n{Colors.YELLOW}Interrupted by user{Colors.END}", file=sys.stderr)
        sys.exit(130)
    except Exception as e:
        logger.exception("GLM specification failed")
        print(f"\n{Colors.RED}✗ GLM specification failed: {str(e)}{Colors.END}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
