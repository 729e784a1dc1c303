#!/usr/bin/env python3
"""
Entry point for running ikspoz as a module.

This allows the package to be executed with:
    python -m ikspoz
"""
from ikspoz.cli import cli

if __name__ == "__main__":
    cli()
