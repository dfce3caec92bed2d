"""Allow running as ``python -m peelog``."""

from peelog.cli.main import app

if __name__ == "__main__":
    app()
