"""Approval gate exposed to the agent over MCP."""
