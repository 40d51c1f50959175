#!/usr/bin/env python3
"""
Development helpers for the Knowledge Gains coaching API
Run with: python scripts/dev.py [command]
"""

import argparse
import ast
import subprocess
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent


def run_command(cmd: list[str], description: str = "") -> bool:
    if description:
        print(f"-> {description}")

    try:
        subprocess.run(cmd, check=True, cwd=ROOT)
    except subprocess.CalledProcessError as e:
        print(f"Command failed: {' '.join(cmd)} (exit {e.returncode})")
        return False
    return True


def serve():
    """Start the API with hot reload"""
    run_command(
        ["uvicorn", "main:app", "--reload", "--host", "0.0.0.0", "--port", "8000"],
        "Starting FastAPI server",
    )


def test():
    if not run_command(["pytest", "-v"], "Running tests"):
        sys.exit(1)


def format_code():
    run_command(["black", "."], "Formatting with black")
    run_command(["isort", "."], "Sorting imports with isort")


def lint():
    run_command(["flake8", "app", "models", "services", "tests", "main.py"], "Running flake8")
    run_command(["mypy", "app", "services", "main.py"], "Running mypy")


def check():
    """Formatting, lint and tests; exits non-zero on the first failing group"""
    success = True
    success &= run_command(["black", "--check", "."], "Checking formatting")
    success &= run_command(["isort", "--check-only", "."], "Checking import order")
    success &= run_command(["flake8", "app", "models", "services", "tests", "main.py"], "Linting")
    success &= run_command(["pytest", "-v"], "Running tests")

    if not success:
        print("Some checks failed")
        sys.exit(1)
    print("All checks passed")


def setup():
    """Create the upload directory and a local .env"""
    uploads = ROOT / "uploads"
    uploads.mkdir(parents=True, exist_ok=True)
    print(f"Created directory: {uploads.relative_to(ROOT)}")

    env_file = ROOT / ".env"
    env_example = ROOT / ".env.example"
    if not env_file.exists() and env_example.exists():
        env_file.write_text(env_example.read_text())
        print("Created .env from .env.example; fill in the Supabase and Gemini keys")


def db_schema():
    """Print the SQL for the tables this API reads and writes"""
    module = ast.parse((ROOT / "app" / "models.py").read_text())
    print(ast.get_docstring(module))
    print("Run it in the Supabase SQL editor.")


def main():
    commands = {
        "serve": serve,
        "test": test,
        "format": format_code,
        "lint": lint,
        "check": check,
        "setup": setup,
        "db-schema": db_schema,
    }

    parser = argparse.ArgumentParser(description="Knowledge Gains development tools")
    parser.add_argument("command", choices=list(commands), help="Command to run")
    args = parser.parse_args()

    commands[args.command]()


if __name__ == "__main__":
    main()
