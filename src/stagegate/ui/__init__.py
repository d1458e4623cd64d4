"""Command-line surface: argparse router and plain-text rendering."""

from stagegate.ui.cli import CLIError, build_parser, run_cli
from stagegate.ui.render import CLIRenderer, create_renderer

__all__ = ["CLIError", "CLIRenderer", "build_parser", "create_renderer", "run_cli"]
