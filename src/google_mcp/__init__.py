"""Google MCP Server.

Expose Google Drive, Docs, Sheets, Calendar, Gmail, Contacts, YouTube and
Slides to MCP clients, backed by a locally managed OAuth session.
"""

from google_mcp.__version__ import __version__

__all__ = ["__version__"]
