#!/usr/bin/env python3
"""Run beacon-recorder from a source checkout without installing it."""

import sys

from beacon_recorder.cli import main

if __name__ == "__main__":
    sys.exit(main())
