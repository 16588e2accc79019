"""Entry point for ``python -m tickbot``."""

from tickbot.cli.commands import app

if __name__ == "__main__":
    app()
