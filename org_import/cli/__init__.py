"""Command line interface (python -m org_import.cli)."""
