import sys

from logvault.cli import main

sys.exit(main())
