#!/usr/bin/env python3
"""
Entry point for the paper perpetual-futures account.
Wraps paper_perps/cli.py to ensure correct import resolution.
"""
import sys
import os

# Ensure project root is in python path
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from paper_perps.config.dotenv_loader import load_dotenv_files

load_dotenv_files()

from paper_perps.cli import app

if __name__ == "__main__":
    app()
