"""Entrypoint for `python -m reposcout_mcp`.

Transport selection is driven by MCP_TRANSPORT env var (default: stdio).
"""

from reposcout_mcp.config import settings
from reposcout_mcp.server import mcp

if settings.mcp_transport == "http":
    mcp.run(transport="http", host=settings.mcp_host, port=settings.mcp_port)
else:
    mcp.run()
