import sys

from bastionctl.cli import main

sys.exit(main())
