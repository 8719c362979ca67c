"""
tripgraph pipeline entry point

Allows running the stages via:
    python -m tripgraph.pipeline [args]
"""

from .orchestrator import main

if __name__ == "__main__":
    main()
