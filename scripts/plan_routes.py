import os
import sys

# Allow running this file directly without installing the package
if __package__ in (None, ""):
    sys.path.append(os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "src"))

from visit_route_ai.master_planner import main

if __name__ == "__main__":
    sys.exit(main())
