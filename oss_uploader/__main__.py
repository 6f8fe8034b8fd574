import sys

from oss_uploader.cli import main

sys.exit(main())
