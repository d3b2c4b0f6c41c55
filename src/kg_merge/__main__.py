"""Entry point for python -m kg_merge execution.

This module enables running kg-merge as a module:
    python -m kg_merge --help
    python -m kg_merge check transform.json
"""

from kg_merge.cli import app

if __name__ == "__main__":
    app()
