"""Entry point for `python -m meter_cli` and the `meter` console script."""

from __future__ import annotations

from meter_cli.app import app


def main() -> None:
    app()


if __name__ == "__main__":
    main()
