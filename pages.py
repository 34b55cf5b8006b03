# Browser-facing pages served by the local callback listener.
import html

_STYLE = """
    * { margin: 0; padding: 0; box-sizing: border-box; }
    body {
      font-family: 'Inter', -apple-system, BlinkMacSystemFont, sans-serif;
      display: flex;
      justify-content: center;
      align-items: center;
      min-height: 100vh;
      background: #ffffff;
      color: #000000;
    }
    .container { text-align: center; padding: 60px 40px; max-width: 480px; }
    .icon {
      width: 72px;
      height: 72px;
      border-radius: 50%;
      display: flex;
      align-items: center;
      justify-content: center;
      margin: 0 auto 32px;
    }
    .icon svg { width: 36px; height: 36px; fill: white; }
    .ok { background: #00D26A; }
    .fail { background: #000000; }
    .loader {
      width: 48px;
      height: 48px;
      border: 3px solid #F3F4F6;
      border-top-color: #00D26A;
      border-radius: 50%;
      animation: spin 1s linear infinite;
      margin: 0 auto 32px;
    }
    @keyframes spin { to { transform: rotate(360deg); } }
    h1 { font-size: 28px; font-weight: 700; margin-bottom: 12px; }
    p { font-size: 16px; color: #6B7280; line-height: 1.6; }
    .error-details {
      margin-top: 24px;
      padding: 16px;
      background: #F9FAFB;
      border-radius: 8px;
      font-size: 14px;
      color: #6B7280;
      word-break: break-word;
    }
"""


def _page(title: str, body: str) -> str:
    return f"""<!DOCTYPE html>
<html>
<head>
  <title>{title}</title>
  <style>{_STYLE}</style>
</head>
<body>
  <div class="container">
{body}
  </div>
</body>
</html>"""


def waiting_page() -> str:
    return _page(
        "Tidio MCP - Waiting",
        """    <div class="loader"></div>
    <h1>Waiting for Tidio</h1>
    <p>Complete authentication in the browser window...</p>""",
    )


def success_page() -> str:
    return _page(
        "Tidio Connected",
        """    <div class="icon ok">
      <svg viewBox="0 0 24 24"><path d="M9 16.17L4.83 12l-1.42 1.41L9 19 21 7l-1.41-1.41z"/></svg>
    </div>
    <h1>Tidio Connected</h1>
    <p>You can close this window and return to your application.</p>""",
    )


def error_page(error: str) -> str:
    return _page(
        "Connection Failed",
        f"""    <div class="icon fail">
      <svg viewBox="0 0 24 24"><path d="M19 6.41L17.59 5 12 10.59 6.41 5 5 6.41 10.59 12 5 17.59 6.41 19 12 13.41 17.59 19 19 17.59 13.41 12z"/></svg>
    </div>
    <h1>Connection Failed</h1>
    <p>Something went wrong while connecting to Tidio.</p>
    <div class="error-details">{html.escape(error)}</div>""",
    )
