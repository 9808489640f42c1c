"""Module entrypoint for `python -m ccpalette.client`."""

from __future__ import annotations

from ccpalette.client.client import run


if __name__ == "__main__":
    run()
