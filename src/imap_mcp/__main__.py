"""Entry point: ``python -m imap_mcp`` or the ``imap-mcp`` console script."""

import asyncio

from imap_mcp.server import get_server


def main() -> None:
    asyncio.run(get_server().run())


if __name__ == "__main__":
    main()
