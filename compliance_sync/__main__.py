import sys

from compliance_sync.cli import main

sys.exit(main())
