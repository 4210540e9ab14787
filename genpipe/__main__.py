"""Allow ``python -m genpipe``."""

from genpipe.cli.commands import app

if __name__ == "__main__":
    app()
