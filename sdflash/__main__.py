import sys

from sdflash.main import main

sys.exit(main())
