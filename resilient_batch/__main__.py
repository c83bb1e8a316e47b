import sys

from resilient_batch.main import main


sys.exit(main())
