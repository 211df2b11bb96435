"""HTML pages served by the authorization endpoint."""

import html as html_mod

_STYLE = """
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
            background: #0a0a1a; color: #e0e0e0;
            display: flex; justify-content: center; align-items: center;
            min-height: 100vh; margin: 0; }}
        .card {{ background: #1a1a2e; border: 1px solid {border}; border-radius: 12px;
            padding: 2rem; max-width: 420px; width: 90%;
            box-shadow: 0 4px 24px rgba(0, 0, 0, 0.5); }}
        h1 {{ font-size: 1.3rem; margin: 0 0 0.5rem 0; color: {accent}; }}
        .subtitle {{ color: #aaa; font-size: 0.9rem; margin-bottom: 1.5rem; }}
        .client {{ color: #ff6b9d; font-weight: 600; }}
        .error {{ background: #2a1020; border: 1px solid #ff4444; color: #ff8888;
            border-radius: 8px; padding: 0.75rem; margin-bottom: 1rem; font-size: 0.9rem; }}
        label {{ font-size: 0.9rem; color: #aaa; }}
        input[type=password] {{ width: 100%; padding: 0.6rem; border: 1px solid #2a2a4a;
            border-radius: 6px; background: #12122a; color: #e0e0e0; box-sizing: border-box;
            font-family: monospace; font-size: 1rem; margin-top: 0.4rem; }}
        .hint {{ font-size: 0.8rem; color: #777; margin-top: 0.4rem; }}
        button {{ width: 100%; padding: 0.75rem; border: none; border-radius: 8px;
            font-size: 1rem; cursor: pointer; font-weight: 600; margin-top: 1.5rem;
            background: #00d4ff; color: #0a0a1a; }}
        button:hover {{ background: #00b8e6; }}
        a {{ color: #00d4ff; }}
"""


def authorize_page(
    client_id: str,
    redirect_uri: str,
    state: str,
    code_challenge: str,
    resource: str = "",
    client_name: str = "",
    error: str = "",
) -> str:
    """API key entry form. Every submitted OAuth parameter round-trips as a hidden field."""
    esc = html_mod.escape
    hidden = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
        "resource": resource,
    }
    hidden_inputs = "\n".join(
        f'            <input type="hidden" name="{name}" value="{esc(value or "")}">'
        for name, value in hidden.items()
    )
    error_block = f'<div class="error">{esc(error)}</div>' if error else ""
    who = esc(client_name or client_id or "An MCP client")
    return f"""<!DOCTYPE html>
<html>
<head>
    <title>Memory Server — Authorize</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>{_STYLE.format(border="#2a2a4a", accent="#00d4ff")}</style>
</head>
<body>
    <div class="card">
        <h1>Memory Server</h1>
        <p class="subtitle"><span class="client">{who}</span> wants full access to your memories.</p>
        {error_block}
        <form method="POST" action="/oauth/authorize">
{hidden_inputs}
            <label for="api_key">API key:</label>
            <input type="password" id="api_key" name="api_key" placeholder="msk_..."
                autocomplete="off" required>
            <p class="hint">Your key is checked once and never shared with the client.</p>
            <button type="submit">Authorize</button>
        </form>
    </div>
</body>
</html>"""


def error_page(title: str, message: str) -> str:
    safe_title = html_mod.escape(title)
    safe_msg = html_mod.escape(message)
    return f"""<!DOCTYPE html>
<html>
<head>
    <title>Memory Server — {safe_title}</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>{_STYLE.format(border="#ff4444", accent="#ff4444")}</style>
</head>
<body>
    <div class="card" style="text-align: center">
        <h1>{safe_title}</h1>
        <p>{safe_msg}</p>
        <p style="margin-top:1.5rem"><a href="javascript:window.close()">Close this tab</a></p>
    </div>
</body>
</html>"""
