import sys

from timeshelf.cli import main

sys.exit(main())
