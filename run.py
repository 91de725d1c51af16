#!/usr/bin/env python3
"""
s3wire command-line client

Usage:
    python run.py buckets                      # List buckets
    python run.py ls my-bucket photos/         # List a prefix
    python run.py put big.iso my-bucket        # Parallel, resumable upload
    python run.py get my-bucket big.iso out    # Parallel, resumable download
    python run.py presign my-bucket big.iso    # Presigned GET URL
    python run.py -c custom.json buckets       # Use custom config
    python run.py -j results.json put ...      # Output JSON results
"""

import sys
from s3wire.cli import main

if __name__ == "__main__":
    sys.exit(main())
