import re
from typing import NamedTuple, Optional

from settings import settings

_KEY_RE = re.compile(r"^[a-zA-Z0-9]+$")


class KeyValidation(NamedTuple):
    valid: bool
    message: str


def _widget_url(widget_url: Optional[str]) -> str:
    return (widget_url or settings.TIDIO_WIDGET_URL).rstrip("/")


def preconnect_hint(widget_url: Optional[str] = None) -> str:
    return f'<link rel="preconnect" href="{_widget_url(widget_url)}">'


def generate_async_embed(public_key: str, widget_url: Optional[str] = None) -> str:
    """Script that loads the widget after window load, so it never blocks rendering."""
    src = f"{_widget_url(widget_url)}/{public_key}.js"
    return f"""<script type="text/javascript">
document.tidioChatCode = "{public_key}";
(function() {{
  function asyncLoad() {{
    var tidioScript = document.createElement("script");
    tidioScript.type = "text/javascript";
    tidioScript.async = true;
    tidioScript.src = "{src}";
    document.body.appendChild(tidioScript);
  }}
  if (window.attachEvent) {{
    window.attachEvent("onload", asyncLoad);
  }} else {{
    window.addEventListener("load", asyncLoad, false);
  }}
}})();
</script>"""


def generate_sync_embed(public_key: str, widget_url: Optional[str] = None) -> str:
    return f'<script src="{_widget_url(widget_url)}/{public_key}.js" async></script>'


def validate_public_key(public_key: Optional[str]) -> KeyValidation:
    """Heuristic format check; a failing key is still usable, callers only warn."""
    if not public_key or not public_key.strip():
        return KeyValidation(False, "Public key cannot be empty")

    key = public_key.strip()
    if not _KEY_RE.match(key):
        return KeyValidation(False, "Public key should only contain alphanumeric characters")
    if len(key) < 10:
        return KeyValidation(False, "Public key seems too short (expected 10+ characters)")
    if len(key) > 50:
        return KeyValidation(False, "Public key seems too long (expected less than 50 characters)")
    return KeyValidation(True, "Public key format appears valid")
