"""Allow ``python -m exitcheck``."""

from exitcheck.cli import app

if __name__ == "__main__":
    app(prog_name="exitcheck")
