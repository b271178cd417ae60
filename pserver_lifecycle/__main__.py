"""Allow running as ``python -m pserver_lifecycle``."""

import sys

from pserver_lifecycle.main import main

sys.exit(main())
