import sys

from vbmonitor.cli import main

sys.exit(main())
