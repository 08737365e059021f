import sys

from plugin_depot.cli import main

sys.exit(main())
