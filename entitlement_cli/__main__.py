"""Entry point for ``python -m entitlement_cli`` and the ``entitlements`` console script."""

from __future__ import annotations

from entitlement_cli.app import app


def main() -> None:
    app()


if __name__ == "__main__":
    main()
