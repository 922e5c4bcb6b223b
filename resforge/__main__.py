# resforge/__main__.py
import sys

from resforge.cli import main

sys.exit(main())
