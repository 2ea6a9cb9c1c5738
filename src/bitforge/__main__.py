"""Allow ``python -m bitforge``."""

from __future__ import annotations

import sys

from bitforge.cli_main import main

sys.exit(main())
