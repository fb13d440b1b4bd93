import sys

from container_transform.scripts.transform_container import main

sys.exit(main())
