import sys

from scandaemon.cli import main

sys.exit(main())
