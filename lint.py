#!/usr/bin/env python3
"""
Code quality script for the recorder.

    python lint.py           auto-fix with ruff, isort and black
    python lint.py --check   report problems without touching files
"""

import subprocess
import sys
from pathlib import Path

ROOT = Path(__file__).parent
TARGETS = ["voice_recorder", "cogs", "tests", "main.py", "lint.py"]

CHECK_STEPS = [
    ("Ruff linting", ["ruff", "check"]),
    ("Black formatting check", ["black", "--check"]),
    ("isort import sorting check", ["isort", "--check-only"]),
]

FIX_STEPS = [
    ("Ruff auto-fix", ["ruff", "check", "--fix"]),
    ("isort import sorting", ["isort"]),
    ("Black code formatting", ["black"]),
]


def run_step(description: str, command: list[str]) -> bool:
    """Run one tool over every target; True when it exits cleanly."""
    full_command = command + TARGETS
    print(f"\n{'-' * 80}\n{description}: {' '.join(full_command)}\n{'-' * 80}")

    try:
        returncode = subprocess.run(full_command, cwd=ROOT).returncode
    except FileNotFoundError:
        print(f"❌ {command[0]} is not installed (pip install -e '.[dev]')")
        return False

    print(f"{'✅' if returncode == 0 else '❌'} {description}")
    return returncode == 0


def main(argv: list[str]) -> int:
    check_only = "--check" in argv
    steps = CHECK_STEPS if check_only else FIX_STEPS

    print("🔍 CHECK-ONLY mode" if check_only else "🔧 AUTO-FIX mode")
    failed = [description for description, command in steps if not run_step(description, command)]

    if not failed:
        print("\n🎉 All checks passed!\n" if check_only else "\n🎉 Formatting complete!\n")
        return 0

    print(f"\n⚠️  Failed: {', '.join(failed)}")
    if check_only:
        print("Run 'python lint.py' without --check to auto-fix.\n")
    return 1


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
