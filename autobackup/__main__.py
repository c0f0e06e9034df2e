import sys

from autobackup.cli import main


sys.exit(main())
