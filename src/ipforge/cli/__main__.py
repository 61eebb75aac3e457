"""CLI entry point for ipforge.cli module.

Enables execution via: python -m ipforge.cli <command>
"""

from ipforge.cli.registrations import main

if __name__ == "__main__":
    main()
