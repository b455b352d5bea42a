import sys

from pocketlog.cli import main

sys.exit(main())
