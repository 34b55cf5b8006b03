# app.py
import logging
import sys
from datetime import datetime
from typing import Annotated, Literal
from urllib.parse import urlparse

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError
from pydantic import Field

from settings import settings
from embeds import generate_async_embed, generate_sync_embed, preconnect_hint, validate_public_key
from tidio_oauth import OAuthFlow
from tidio_storage import CredentialStore

logger = logging.getLogger(__name__)


# =========================
# FastMCP server + tools
# =========================

server_instructions = """
Tidio connector (MCP) exposing four tools:
- tidio_connect(site_url): opens the browser for Tidio sign-in, then stores and returns
  the project public key together with ready-to-paste embed code.
- tidio_status(): shows whether a Tidio account is connected and the stored embed code.
- tidio_disconnect(): clears the stored credentials.
- generate_tidio_embed(public_key, loading_mode): embed code for a key you already have.
"""

mcp = FastMCP(name="tidio-mcp-connector", instructions=server_instructions)
store = CredentialStore(settings.TIDIO_CREDENTIALS_PATH)
oauth = OAuthFlow(settings, store=store)


def _is_valid_url(value: str) -> bool:
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    return bool(parsed.scheme and parsed.netloc)


def _format_date(timestamp: str) -> str:
    try:
        return datetime.fromisoformat(timestamp.replace("Z", "+00:00")).date().isoformat()
    except (AttributeError, ValueError):
        return timestamp or "unknown"


@mcp.tool()
async def tidio_connect(
    site_url: Annotated[str, Field(description="The website URL where Tidio will be embedded (e.g., https://example.com)")],
) -> str:
    """
    Connect to Tidio and automatically get your public key. Opens browser for authentication,
    then returns the public key and embed code. This is the recommended way to set up Tidio.
    """
    site_url = (site_url or "").strip()
    if not site_url:
        raise ToolError("Error: site_url is required. Please provide the website URL where Tidio will be embedded.")
    if not _is_valid_url(site_url):
        raise ToolError("Error: Invalid URL format. Please provide a valid URL (e.g., https://example.com)")

    logger.info(f"Connecting Tidio for {site_url}...")
    result = await oauth.run(site_url)
    if not result.success or not result.credentials:
        raise ToolError(
            f"# Tidio Connection Failed\n\n"
            f"**Error:** {result.error or 'Unknown error'}\n\n"
            f"Please try again or check your Tidio account."
        )

    creds = result.credentials
    return f"""# Tidio Connected Successfully!

**Public Key:** `{creds['public_key']}`
**Site URL:** {creds['site_url']}

## Embed Code

Add this code just before the closing `</body>` tag of your HTML:

```html
{generate_async_embed(creds['public_key'])}
```

## Optional: Add Preconnect

For faster loading, add this in your `<head>` section:

```html
{preconnect_hint()}
```

Your credentials have been saved. Use `tidio_status` to view them anytime."""


@mcp.tool()
async def tidio_status() -> str:
    """Check if Tidio is connected and get the current public key and embed code. Use this to see your connection status."""
    creds = store.load()
    if not creds or not store.has_valid():
        return (
            "# Tidio Status\n\n"
            "**Status:** Not connected\n\n"
            "Use `tidio_connect` to connect your Tidio account and get your embed code."
        )

    return f"""# Tidio Status

**Status:** Connected
**Public Key:** `{creds['public_key']}`
**Site URL:** {creds.get('site_url', '')}
**Connected:** {_format_date(creds.get('created_at', ''))}

## Embed Code

```html
{generate_async_embed(creds['public_key'])}
```

Use `tidio_disconnect` to clear credentials or `tidio_connect` to reconnect."""


@mcp.tool()
async def tidio_disconnect() -> str:
    """Disconnect from Tidio and clear stored credentials."""
    had_credentials = store.has_valid()
    if not store.clear():
        raise ToolError("Error: could not clear the stored Tidio credentials.")
    if had_credentials:
        return "# Tidio Disconnected\n\nCredentials have been cleared. Use `tidio_connect` to reconnect."
    return "# Tidio\n\nNo credentials were stored. Use `tidio_connect` to connect."


@mcp.tool()
async def generate_tidio_embed(
    public_key: Annotated[str, Field(description="Your Tidio public key")],
    loading_mode: Annotated[
        Literal["async", "sync"],
        Field(description="Loading mode: 'async' (recommended) or 'sync'. Default: async"),
    ] = "async",
) -> str:
    """
    Generate Tidio embed code for a specific public key. Use this if you already have your
    public key, or use tidio_connect for automatic setup.
    """
    public_key = (public_key or "").strip()
    if not public_key:
        raise ToolError("Error: public_key is required. Use `tidio_connect` for automatic setup, or provide your public key.")

    warning = ""
    validation = validate_public_key(public_key)
    if not validation.valid:
        logger.warning(f"Public key failed validation: {validation.message}")
        warning = (
            f"Warning: {validation.message}\n\n"
            "Proceeding with embed generation anyway. If the widget doesn't work, please verify "
            "your public key or use `tidio_connect` for automatic setup.\n\n"
        )

    if loading_mode == "sync":
        embed = generate_sync_embed(public_key)
        instructions = "Add this code in the <head> section or just before the closing </body> tag."
    else:
        embed = generate_async_embed(public_key)
        instructions = "Add this code just before the closing </body> tag of your HTML."

    return f"""{warning}# Tidio Embed Code ({loading_mode} loading)

{instructions}

```html
{embed}
```

## Preconnect (Optional)

Add this in your <head> section for faster widget loading:

```html
{preconnect_hint()}
```"""


def main():
    # stderr only: stdout is the MCP stdio channel
    logging.basicConfig(level=settings.TIDIO_LOG_LEVEL.upper(), stream=sys.stderr)
    logger.info("Tidio MCP Connector running on stdio")
    try:
        mcp.run()
    except Exception:
        logger.exception("Fatal error")
        sys.exit(1)


# Entry point
if __name__ == "__main__":
    main()
