"""Shim that exposes the packaged Overseer CLI."""

from overseer.cli import app, main

__all__ = ["app", "main"]

if __name__ == "__main__":
    main()
