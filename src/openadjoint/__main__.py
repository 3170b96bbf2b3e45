"""Main entry point for running OpenAdjoint as a module."""

import sys

if __name__ == "__main__":
    from openadjoint.cli.app import main
    sys.exit(main())
