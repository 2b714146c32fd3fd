"""MCP server implementation for google-mcp.

Authentication tools:
- google_auth: start the browser consent flow and return the consent URL
- google_auth_status: report whether a session is active and where files live
- google_auth_code: exchange a manually copied authorization code
- google_logout: remove and revoke the stored session

Resources:
- google://auth/status
- google://auth/credentials-path

Google API tools (Drive, Calendar, Gmail) require an active session.

Transport: Stdio
Authentication: OAuth 2.0 with automatic token refresh
"""

from google_mcp.auth import SessionManager
from google_mcp.server.google_mcp_server import (
    GoogleMCPServer,
    ToolError,
    configure_logging,
    main,
)


def create_server(session: SessionManager | None = None) -> GoogleMCPServer:
    """Create and configure a Google MCP server.

    Args:
        session: Session manager to share. Creates one if not provided.

    Returns:
        GoogleMCPServer: Configured server instance ready to run.

    Example:
        >>> server = create_server()
        >>> asyncio.run(server.run())
    """
    return GoogleMCPServer(session=session)


__all__ = ["create_server", "configure_logging", "GoogleMCPServer", "ToolError", "main"]
