"""Development task runner for the diVine services package."""

from __future__ import annotations

import argparse
import shutil
import subprocess
from pathlib import Path

ROOT = Path(__file__).parent


def run_command(command: list[str]) -> None:
    """Execute a command, exiting with its status on failure."""

    print("$", " ".join(command))
    try:
        result = subprocess.run(command, check=False)
    except FileNotFoundError as exc:  # pragma: no cover - depends on local env
        raise SystemExit(f"Required command '{command[0]}' was not found. Is it installed and on your PATH?") from exc

    if result.returncode != 0:
        raise SystemExit(result.returncode)


def cmd_install(_args: argparse.Namespace) -> None:
    run_command(["poetry", "install", "--extras", "test"])


def cmd_test(args: argparse.Namespace) -> None:
    command = ["poetry", "run", "pytest"]
    if args.match:
        command += ["-k", args.match]
    run_command(command)


def cmd_cli(args: argparse.Namespace) -> None:
    run_command(["poetry", "run", "divine", *args.rest])


def cmd_format(_args: argparse.Namespace) -> None:
    run_command(["poetry", "run", "ruff", "format", "divine", "tests"])


def cmd_lint(_args: argparse.Namespace) -> None:
    run_command(["poetry", "run", "ruff", "check", "divine", "tests"])
    run_command(["poetry", "run", "mypy", "divine"])


def cmd_clean(_args: argparse.Namespace) -> None:
    removed = 0
    for pattern in ("**/__pycache__", ".pytest_cache", ".ruff_cache", ".mypy_cache", "dist"):
        for path in ROOT.glob(pattern):
            if path.is_dir():
                shutil.rmtree(path, ignore_errors=True)
                removed += 1
    print(f"Removed {removed} cache directories.")


COMMANDS = {
    "install": cmd_install,
    "test": cmd_test,
    "cli": cmd_cli,
    "format": cmd_format,
    "lint": cmd_lint,
    "clean": cmd_clean,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("install", help="Install the package and test extras via Poetry.")

    test_parser = subparsers.add_parser("test", help="Run the test suite.")
    test_parser.add_argument("-k", dest="match", help="Only run tests matching this expression.")

    cli_parser = subparsers.add_parser("cli", help="Run the divine command line tool.")
    cli_parser.add_argument("rest", nargs=argparse.REMAINDER)

    subparsers.add_parser("format", help="Format code with Ruff.")
    subparsers.add_parser("lint", help="Run static analysis (Ruff + mypy).")
    subparsers.add_parser("clean", help="Remove Python and tooling caches.")

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    COMMANDS[args.command](args)


if __name__ == "__main__":
    main()
