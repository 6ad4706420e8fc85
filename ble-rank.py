#!/usr/bin/env python3
"""Run blerank straight from a source checkout."""

from blerank.cli import main

if __name__ == "__main__":
    main()
