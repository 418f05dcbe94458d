"""CLI entry point for ecocert_archiver.cli module.

Enables execution via: python -m ecocert_archiver.cli <command>
"""

from ecocert_archiver.cli.archiver import main

if __name__ == "__main__":
    main()
