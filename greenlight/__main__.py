import sys

from greenlight.main import main

sys.exit(main())
