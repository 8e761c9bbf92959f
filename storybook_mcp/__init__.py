"""Storybook image + story generator served as an MCP tool."""

__version__ = "1.2.2"
