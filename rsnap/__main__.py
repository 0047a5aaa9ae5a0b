import sys

from rsnap.cli import main

sys.exit(main())
