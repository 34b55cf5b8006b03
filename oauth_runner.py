# Connect a Tidio account from the terminal, without an MCP client.
# Usage: python oauth_runner.py https://example.com
import asyncio
import logging
import sys

from embeds import generate_async_embed
from settings import settings
from tidio_oauth import OAuthFlow

logger = logging.getLogger(__name__)


def main(argv=None) -> int:
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 1:
        print("usage: python oauth_runner.py <site_url>", file=sys.stderr)
        return 2

    logging.basicConfig(level=settings.TIDIO_LOG_LEVEL.upper())
    result = asyncio.run(OAuthFlow(settings).run(args[0]))
    if not result.success:
        logger.error(f"Tidio connect failed: {result.error}")
        return 1

    creds = result.credentials
    print(f"Public key: {creds['public_key']}")
    print(f"Saved to:   {settings.TIDIO_CREDENTIALS_PATH}\n")
    print(generate_async_embed(creds['public_key']))
    return 0


if __name__ == "__main__":
    sys.exit(main())
