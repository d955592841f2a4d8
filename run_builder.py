"""
Standalone entry point for the one-shot builder pod.
Run via:  python run_builder.py [build|operator]
"""

import sys

from mcbuilder.main import main

sys.exit(main())
