"""Google MCP server.

This MCP server exposes Google APIs as tools. Authentication is handled by a
single SessionManager owned by the server: the ``google_auth*`` tools drive
the OAuth lifecycle, and every other tool asks the session for an access
token before calling Google.
"""

import asyncio
import json
import logging
import os
import sys
from typing import Any

import httpx
from mcp.server import Server
from mcp.server.lowlevel.helper_types import ReadResourceContents
from mcp.server.stdio import stdio_server
from mcp.types import Resource, TextContent, Tool
from pydantic import AnyUrl

from google_mcp.auth import SessionManager

logger = logging.getLogger(__name__)

SERVER_NAME = "google-mcp"
LOG_LEVEL_ENV = "GOOGLE_MCP_LOG_LEVEL"

# Google API base URLs
DRIVE_API_BASE = "https://www.googleapis.com/drive/v3"
CALENDAR_API_BASE = "https://www.googleapis.com/calendar/v3"
GMAIL_API_BASE = "https://gmail.googleapis.com/gmail/v1"

AUTH_STATUS_URI = "google://auth/status"
CREDENTIALS_PATH_URI = "google://auth/credentials-path"

NOT_AUTHENTICATED_MESSAGE = (
    "Not authenticated. Please authenticate first using the google_auth tool "
    "or place credentials at {credentials_path}"
)

AUTH_TOOLS = {"google_auth", "google_auth_status", "google_auth_code", "google_logout"}


class ToolError(Exception):
    """A tool failure the client should see as an error result."""


class GoogleMCPServer:
    """MCP server for Google APIs.

    Attributes:
        server: MCP Server instance.
        session: SessionManager shared by every tool handler.
    """

    def __init__(self, session: SessionManager | None = None) -> None:
        """Initialize the Google MCP server.

        Args:
            session: Session manager. Creates one for the platform paths if not provided.
        """
        self.server = Server(SERVER_NAME)
        self.session = session or SessionManager()
        self._http_client: httpx.AsyncClient | None = None
        self._auth_task: asyncio.Task[bool] | None = None
        self._setup_handlers()

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create shared HTTP client with connection pooling.

        Returns:
            Shared httpx.AsyncClient instance.
        """
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                http2=True,
                limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
                timeout=httpx.Timeout(30.0, connect=10.0),
            )
        return self._http_client

    async def close(self) -> None:
        """Close the shared HTTP client and release resources."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    def _setup_handlers(self) -> None:
        """Register MCP handlers."""

        @self.server.list_tools()
        async def list_tools() -> list[Tool]:
            """Return list of available tools."""
            return TOOLS

        @self.server.call_tool()
        async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
            """Handle tool calls."""
            return await self.handle_tool_call(name, arguments or {})

        @self.server.list_resources()
        async def list_resources() -> list[Resource]:
            """Return list of available resources."""
            return RESOURCES

        @self.server.read_resource()
        async def read_resource(uri: AnyUrl) -> list[ReadResourceContents]:
            """Read an authentication resource."""
            return self.read_resource(str(uri))

    def read_resource(self, uri: str) -> list[ReadResourceContents]:
        """Render an authentication resource.

        Raises:
            ValueError: If the URI is not one of RESOURCES.
        """
        if uri == AUTH_STATUS_URI:
            return [
                ReadResourceContents(
                    content=json.dumps(self._auth_status(), indent=2),
                    mime_type="application/json",
                )
            ]
        if uri == CREDENTIALS_PATH_URI:
            return [
                ReadResourceContents(
                    content=str(self.session.credentials_path),
                    mime_type="text/plain",
                )
            ]
        raise ValueError(f"Unknown resource: {uri}")

    async def handle_tool_call(self, name: str, arguments: dict[str, Any]) -> list[TextContent]:
        """Run a tool and render its result as text content.

        Failures are reported as ``{"error": ...}`` text, except ToolError,
        which propagates so the MCP server marks the result ``isError``.
        """
        try:
            if name in AUTH_TOOLS:
                text = await self._dispatch_auth_tool(name, arguments)
            else:
                result = await self._dispatch_tool(name, arguments)
                text = json.dumps(result, indent=2)
        except ToolError:
            raise
        except RuntimeError as e:
            text = json.dumps({"error": str(e)}, indent=2)
        except httpx.HTTPStatusError as e:
            logger.warning("Google API error in %s: %s", name, e.response.status_code)
            text = json.dumps(
                {"error": f"Google API request failed with status {e.response.status_code}"},
                indent=2,
            )
        except Exception as e:
            logger.exception(f"Error calling tool {name}")
            text = json.dumps({"error": str(e)}, indent=2)
        return [TextContent(type="text", text=text)]

    # ------------------------------------------------------------------
    # Authentication tools
    # ------------------------------------------------------------------

    def _auth_status(self) -> dict[str, Any]:
        identity_status = self.session.identity_status
        session_status = self.session.session_status
        return {
            "authenticated": self.session.is_ready(),
            "phase": self.session.phase.value,
            "credentials_path": str(self.session.credentials_path),
            "token_path": str(self.session.token_path),
            "credentials_file": identity_status.value if identity_status else None,
            "token_file": session_status.value if session_status else None,
        }

    async def _dispatch_auth_tool(self, name: str, arguments: dict[str, Any]) -> str:
        if name == "google_auth":
            return await self._google_auth()

        if name == "google_auth_status":
            await self.session.initialize()
            return json.dumps(self._auth_status(), indent=2)

        if name == "google_auth_code":
            code = arguments.get("code", "")
            if await self.session.set_auth_code(code):
                return "Successfully authenticated with Google!"
            raise ToolError("Failed to authenticate with the provided code.")

        # google_logout
        await self.session.logout()
        return "Successfully logged out from Google."

    async def _google_auth(self) -> str:
        if await self.session.initialize():
            return "Already authenticated with Google!"

        auth_url = self.session.get_auth_url()
        if auth_url is None:
            raise ToolError(self.session.setup_instructions())

        # The consent flow waits for the browser redirect in the background
        if self._auth_task is None or self._auth_task.done():
            self._auth_task = asyncio.create_task(self.session.authenticate())

        return (
            f"Please authenticate with Google by visiting:\n\n{auth_url}\n\n"
            "After authenticating, the browser will redirect you. If this server runs on "
            "the same machine, authentication will complete automatically. Otherwise, use "
            "the google_auth_code tool with the code from the redirect URL."
        )

    # ------------------------------------------------------------------
    # Google API access
    # ------------------------------------------------------------------

    async def _get_access_token(self) -> str:
        """Get a valid access token, resuming the stored session if needed.

        Returns:
            Valid access token string.

        Raises:
            RuntimeError: If no session is available.
        """
        if not self.session.is_ready():
            await self.session.initialize()

        token = await self.session.get_access_token()
        if token is None:
            raise RuntimeError(
                NOT_AUTHENTICATED_MESSAGE.format(credentials_path=self.session.credentials_path)
            )
        return token

    async def _make_request(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make an authenticated HTTP request to Google APIs.

        Args:
            method: HTTP method (GET, POST, etc.).
            url: Full URL to request.
            params: Optional query parameters.
            json_data: Optional JSON body data.

        Returns:
            JSON response as a dictionary.

        Raises:
            httpx.HTTPStatusError: If the request fails.
        """
        access_token = await self._get_access_token()
        client = await self._get_http_client()

        response = await client.request(
            method=method,
            url=url,
            params=params,
            json=json_data,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/json",
            },
        )
        response.raise_for_status()
        result: dict[str, Any] = response.json()
        return result

    async def _dispatch_tool(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """Dispatch tool call to appropriate handler.

        Args:
            name: Tool name.
            arguments: Tool arguments.

        Returns:
            Tool result as dictionary.

        Raises:
            ValueError: If tool name is not recognized.
        """
        handlers = {
            "drive_list_files": self._drive_list_files,
            "calendar_list_events": self._calendar_list_events,
            "gmail_search_messages": self._gmail_search_messages,
        }

        handler = handlers.get(name)
        if handler is None:
            raise ValueError(f"Unknown tool: {name}")
        return await handler(arguments)

    async def _drive_list_files(self, arguments: dict[str, Any]) -> dict[str, Any]:
        params: dict[str, Any] = {
            "pageSize": arguments.get("page_size", 10),
            "fields": "files(id,name,mimeType,modifiedTime,webViewLink)",
        }
        if arguments.get("query"):
            params["q"] = arguments["query"]

        data = await self._make_request("GET", f"{DRIVE_API_BASE}/files", params=params)
        files = data.get("files", [])
        return {"files": files, "count": len(files)}

    async def _calendar_list_events(self, arguments: dict[str, Any]) -> dict[str, Any]:
        calendar_id = arguments.get("calendar_id", "primary")
        params: dict[str, Any] = {
            "maxResults": arguments.get("max_results", 10),
            "singleEvents": "true",
            "orderBy": "startTime",
        }
        if arguments.get("time_min"):
            params["timeMin"] = arguments["time_min"]
        if arguments.get("time_max"):
            params["timeMax"] = arguments["time_max"]

        url = f"{CALENDAR_API_BASE}/calendars/{calendar_id}/events"
        data = await self._make_request("GET", url, params=params)

        events = [
            {
                "id": item.get("id"),
                "summary": item.get("summary", "(no title)"),
                "start": item.get("start", {}).get("dateTime") or item.get("start", {}).get("date"),
                "end": item.get("end", {}).get("dateTime") or item.get("end", {}).get("date"),
            }
            for item in data.get("items", [])
        ]
        return {"events": events, "count": len(events)}

    async def _gmail_search_messages(self, arguments: dict[str, Any]) -> dict[str, Any]:
        params = {
            "q": arguments.get("query", ""),
            "maxResults": arguments.get("max_results", 10),
        }
        data = await self._make_request("GET", f"{GMAIL_API_BASE}/users/me/messages", params=params)
        messages = data.get("messages", [])
        return {"messages": messages, "count": len(messages)}

    async def run(self) -> None:
        """Run the MCP server using stdio transport."""
        self.session.store.ensure_directories()

        paths = self.session.store.paths
        logger.info("Google MCP Server starting...")
        logger.info("  Config directory: %s", paths.config_dir)
        logger.info("  Data directory: %s", paths.data_dir)
        logger.info("  Credentials file: %s", paths.credentials_path)
        logger.info("  Token file: %s", paths.token_path)

        if await self.session.initialize():
            logger.info("  Authentication: Ready")
        else:
            logger.info("  Authentication: Not configured (run google_auth tool)")

        try:
            async with stdio_server() as (read_stream, write_stream):
                await self.server.run(
                    read_stream,
                    write_stream,
                    self.server.create_initialization_options(),
                )
        finally:
            await self.close()


TOOLS = [
    Tool(
        name="google_auth",
        description=(
            "Authenticate with Google. Call this first if other tools return authentication "
            "errors. This will provide a URL to authenticate with Google OAuth."
        ),
        inputSchema={"type": "object", "properties": {}, "required": []},
    ),
    Tool(
        name="google_auth_status",
        description="Check the current authentication status with Google.",
        inputSchema={"type": "object", "properties": {}, "required": []},
    ),
    Tool(
        name="google_auth_code",
        description="Set the authorization code received from Google OAuth callback.",
        inputSchema={
            "type": "object",
            "properties": {
                "code": {
                    "type": "string",
                    "description": "The authorization code from Google OAuth",
                },
            },
            "required": ["code"],
        },
    ),
    Tool(
        name="google_logout",
        description="Log out from Google and remove stored tokens.",
        inputSchema={"type": "object", "properties": {}, "required": []},
    ),
    Tool(
        name="drive_list_files",
        description="List files in Google Drive, optionally filtered by a Drive query",
        inputSchema={
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "Drive API query (e.g., 'name contains \"report\"')",
                },
                "page_size": {
                    "type": "integer",
                    "description": "Maximum number of files to return (default: 10)",
                    "default": 10,
                },
            },
            "required": [],
        },
    ),
    Tool(
        name="calendar_list_events",
        description="List events from a calendar within an optional time range",
        inputSchema={
            "type": "object",
            "properties": {
                "calendar_id": {
                    "type": "string",
                    "description": "Calendar ID (default: 'primary')",
                    "default": "primary",
                },
                "time_min": {
                    "type": "string",
                    "description": "Start time in RFC3339 format (e.g., '2024-01-01T00:00:00Z')",
                },
                "time_max": {
                    "type": "string",
                    "description": "End time in RFC3339 format",
                },
                "max_results": {
                    "type": "integer",
                    "description": "Maximum number of events to return (default: 10)",
                    "default": 10,
                },
            },
            "required": [],
        },
    ),
    Tool(
        name="gmail_search_messages",
        description="Search Gmail messages using a query string",
        inputSchema={
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "Gmail search query (e.g., 'from:user@example.com subject:meeting')",
                },
                "max_results": {
                    "type": "integer",
                    "description": "Maximum number of messages to return (default: 10)",
                    "default": 10,
                },
            },
            "required": ["query"],
        },
    ),
]

RESOURCES = [
    Resource(
        uri=AnyUrl(AUTH_STATUS_URI),
        name="Authentication Status",
        description="Current Google OAuth authentication status",
        mimeType="application/json",
    ),
    Resource(
        uri=AnyUrl(CREDENTIALS_PATH_URI),
        name="Credentials Path",
        description="Path where Google OAuth credentials should be placed",
        mimeType="text/plain",
    ),
]


def configure_logging() -> None:
    """Send log output to stderr; stdout carries the MCP transport."""
    level = os.environ.get(LOG_LEVEL_ENV, "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def main() -> None:
    """Entry point for the Google MCP server."""
    configure_logging()
    server = GoogleMCPServer()
    asyncio.run(server.run())


if __name__ == "__main__":
    main()
