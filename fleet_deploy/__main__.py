import sys

from fleet_deploy.cli import main

sys.exit(main())
