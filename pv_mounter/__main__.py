"""Allow ``python -m pv_mounter``."""

import sys

from pv_mounter.cli import main

sys.exit(main())
