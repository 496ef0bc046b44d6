"""mash - a minimal agent whose only tool is the shell.

The conversation loop turns each model turn into at most one shell command.
Task tracking and MCP tools are reached through shell commands as well: a
markdown checklist file and a local HTTP proxy in front of MCP servers.
"""

__version__ = "0.1.0"
