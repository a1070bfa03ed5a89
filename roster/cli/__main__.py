import sys

from roster.cli import main

sys.exit(main())
