"""Allow running pcibisect with ``python -m pcibisect``."""

import sys

from pcibisect.cli import main


sys.exit(main())
