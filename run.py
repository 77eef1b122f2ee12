#!/usr/bin/env python3
"""
s3lite command-line client

Run this script to work with objects in an S3-compatible bucket.

Usage:
    python run.py put report.csv reports/2024.csv   # Upload a file
    python run.py get reports/2024.csv              # Download an object
    python run.py ls reports/                       # List a prefix
    python run.py presign reports/2024.csv -e 600   # Presigned URL, 10 minutes
    python run.py -c other.json stat key            # Use another config file
"""

import sys
from s3lite.cli import main

if __name__ == "__main__":
    sys.exit(main())
