"""python -m reportbot entry point."""

from reportbot.cli.commands import app

if __name__ == "__main__":
    app()
