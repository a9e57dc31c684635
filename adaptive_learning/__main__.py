"""
Entry point for running adaptive_learning as a module.

Usage:
    python -m adaptive_learning stats
    python -m adaptive_learning analyze plan.md 3

This is equivalent to:
    learning-cli [args]
"""

from adaptive_learning.cli.learning_cli import main


if __name__ == "__main__":
    main()
