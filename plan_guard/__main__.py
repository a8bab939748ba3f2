"""
Entry point for running plan_guard as a module.

Allows running as: python -m plan_guard
"""

from plan_guard.cli import cli_main

if __name__ == "__main__":
    cli_main()
