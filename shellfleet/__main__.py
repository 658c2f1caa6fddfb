import sys

from shellfleet.cli import main

sys.exit(main())
