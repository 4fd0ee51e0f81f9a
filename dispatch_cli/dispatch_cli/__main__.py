"""Entry point for `python -m dispatch_cli` and the `dispatch` console script."""

from __future__ import annotations

from dispatch_cli.app import app


def main() -> None:
    app()


if __name__ == "__main__":
    main()
