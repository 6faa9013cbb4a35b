# stagebuild/__main__.py
import sys

from stagebuild.cli import main

sys.exit(main())
