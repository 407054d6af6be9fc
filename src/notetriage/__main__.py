"""Entry point for running notetriage as a module.

Usage:
    python -m notetriage validate-config
    python -m notetriage --help
"""

from notetriage.cli import main

if __name__ == "__main__":
    main()
