import sys
import os

# Inject the category-crawler directory into sys.path
# This ensures all sub-packages (crawler, frontier, discovery, monitoring) are resolvable.
sys.path.append(os.path.join(os.path.dirname(__file__), "category-crawler"))

from crawler.cli import main

if __name__ == "__main__":
    sys.exit(main())
