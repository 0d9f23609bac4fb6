#!/usr/bin/env python

import sys

from xbps_mirror.main import main as run_main_process


if __name__ == "__main__":
    # Execute the main application logic and exit with its status code
    sys.exit(run_main_process())
