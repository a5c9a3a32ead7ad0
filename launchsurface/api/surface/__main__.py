"""
`python -m launchsurface.api.surface` entrypoint.

The CLI lives in `cli.py` so importing the pipeline from library code does
not pull in argparse wiring.
"""

from __future__ import annotations

from . import cli


def main() -> int:
    """Delegate to `launchsurface.api.surface.cli.main`."""
    return cli.main()


if __name__ == "__main__":
    raise SystemExit(main())
