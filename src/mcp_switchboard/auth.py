"""
Credential resolution for remote MCP servers.

Only static credentials are handled here: a bearer token from the config
or the environment, or an access token previously written to
``<oauth_dir>/<server>/tokens.json``. No OAuth flow or refresh is performed.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import TYPE_CHECKING

from mcp_switchboard.errors import AuthError

if TYPE_CHECKING:
    from mcp_switchboard.config import ServerDefinition


def token_path(server: str, oauth_dir: str | Path) -> Path:
    """Location of the OAuth token file for a server."""
    return Path(oauth_dir).expanduser() / server / "tokens.json"


def load_oauth_token(server: str, oauth_dir: str | Path) -> str:
    """Read the access token previously stored for a server.

    Raises:
        AuthError: If the file is missing, unreadable or has no access_token
    """
    path = token_path(server, oauth_dir)
    if not path.is_file():
        raise AuthError(f"No OAuth token for '{server}' (expected {path})")

    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise AuthError(f"Unreadable OAuth token file {path}: {e}") from e

    token = data.get("access_token") if isinstance(data, dict) else None
    if not token or not isinstance(token, str):
        raise AuthError(f"OAuth token file {path} has no access_token")
    return token


def resolve_auth_headers(definition: ServerDefinition, oauth_dir: str | Path) -> dict[str, str]:
    """Build the HTTP headers for a server, including its Authorization header."""
    headers = dict(definition.headers)

    if definition.auth == "bearer":
        token = definition.bearer_token
        if not token and definition.bearer_token_env:
            token = os.environ.get(definition.bearer_token_env)
        if not token:
            raise AuthError(f"No bearer token configured for '{definition.name}'")
        headers["Authorization"] = f"Bearer {token}"
    elif definition.auth == "oauth":
        token = load_oauth_token(definition.name, oauth_dir)
        headers["Authorization"] = f"Bearer {token}"

    return headers


def oauth_instructions(server: str, oauth_dir: str | Path) -> str:
    """Human-readable steps for providing an OAuth token by hand."""
    path = token_path(server, oauth_dir)
    return (
        f'OAuth setup for "{server}":\n\n'
        "1. Obtain an access token from your OAuth provider\n"
        "2. Create the token file:\n"
        f"   {path}\n\n"
        "3. Add your token:\n"
        "   {\n"
        '     "access_token": "your-token-here",\n'
        '     "token_type": "bearer"\n'
        "   }\n\n"
        "4. Reconnect to pick up the token"
    )
