"""Entry point for `python -m isorootfs`."""

from isorootfs.cli import app

if __name__ == "__main__":
    app()
