import sys

from rental_batch.cli import main

sys.exit(main())
