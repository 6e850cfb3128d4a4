# ===--------------------------------------------------------------------------------------===#
#
# Part of the CircleSim Project, under the Apache License v2.0.
# See https://www.apache.org/licenses/LICENSE-2.0 for license information.
# SPDX-License-Identifier: Apache-2.0
#
# ===--------------------------------------------------------------------------------------===#
"""Runs the scaling benchmarks and prints one tab-separated row per worker count.

Usage:
    python scripts/scaling.py strong --ncircles 5000 --iterations 100
    python scripts/scaling.py weak --ncircles 1000 --iterations 100
"""

import sys

from circlesim.benchmark import main

if __name__ == "__main__":
    sys.exit(main())
