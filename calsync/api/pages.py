"""HTML pages shown in the browser window that finishes an OAuth flow."""
from html import escape

_STYLE = """
        body { font-family: Arial, sans-serif; text-align: center; margin-top: 50px; }
        .success { color: green; font-weight: bold; }
        .error { color: red; font-weight: bold; }
        .message { margin: 20px; }
"""


def success_page(provider_name: str) -> str:
    return f"""
    <!DOCTYPE html>
    <html>
    <head>
        <title>{provider_name} Connected</title>
        <style>{_STYLE}</style>
    </head>
    <body>
        <h2 class="success">{provider_name} Successfully Connected!</h2>
        <p>You can close this window and return to the app.</p>
        <button onclick="window.close()">Close Window</button>
    </body>
    </html>
    """


def error_page(provider_name: str, error_message: str) -> str:
    return f"""
    <!DOCTYPE html>
    <html>
    <head>
        <title>Connection Error</title>
        <style>{_STYLE}</style>
    </head>
    <body>
        <h2 class="error">{provider_name} Connection Failed</h2>
        <p class="message">Error: {escape(error_message)}</p>
        <p>Please try again or contact support if the problem persists.</p>
        <button onclick="window.close()">Close Window</button>
    </body>
    </html>
    """
