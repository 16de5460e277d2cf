"""MCP server exposing projmem ingestion, retrieval and answers."""
