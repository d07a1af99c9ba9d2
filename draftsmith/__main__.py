"""Allow ``python -m draftsmith`` (used to spawn the engine process)."""

from draftsmith.main import app

if __name__ == "__main__":
    app()
