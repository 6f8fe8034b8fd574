#!/usr/bin/env python3
"""
OSS Uploader - S3-compatible object store client

Run this script to upload, download or delete objects.

Usage:
    python run.py upload ./backup.tar.gz           # Upload to <filename>
    python run.py upload ./a.bin -p releases       # Upload to releases/a.bin
    python run.py download releases/a.bin -o a.bin # Download to a.bin
    python run.py delete releases/a.bin            # Delete an object
    python run.py url releases/a.bin -e 600        # Presigned URL, 10 minutes
    python run.py -c custom.json upload a.bin      # Use custom config
"""

import sys
from oss_uploader.cli import main

if __name__ == "__main__":
    sys.exit(main())
