import sys

from aicli.cli import main

sys.exit(main())
