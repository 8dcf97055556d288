import sys

from keystack.cli import main

sys.exit(main())
