import sys

from peerchat.main import main

sys.exit(main())
