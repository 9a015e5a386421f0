import sys

from cred_tool.main import main

sys.exit(main())
