import sys

from relay_core.gateway.server import main

sys.exit(main())
