import sys

from pnr_ops.cli import main

sys.exit(main())
