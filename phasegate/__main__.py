"""Allow `python -m phasegate`."""

import sys

from .cli import main

sys.exit(main())
