import sys

from sprout.cli import main

sys.exit(main())
