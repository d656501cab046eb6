"""Allow running the CLI with ``python -m fleetform``."""

from fleetform.cli.main import cli

if __name__ == '__main__':
    cli()
