"""Application entry point for picturebook."""

from __future__ import annotations

from modules.cli.commands import main as cli_main


def main() -> None:
    """Run the command line interface and exit with its status."""
    raise SystemExit(cli_main())


if __name__ == "__main__":
    main()
