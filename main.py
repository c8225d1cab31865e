#!/usr/bin/env python3
"""
Stereo Matching Demo - Main Entry Point
=======================================

Live stereo block matching from two cameras with point cloud display.

Usage:
    python main.py --algorithm=sgbm --max-disparity=64 --blocksize=9 -i intrinsics.yml -e extrinsics.yml
    python main.py --algorithm=bm --no-display -i intrinsics.yml -e extrinsics.yml -o disparity.png -p cloud.ply

Run without arguments to print the full option list.
"""

import sys

from rgbd.stereo_match import main


if __name__ == "__main__":
    sys.exit(main())
