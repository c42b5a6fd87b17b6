"""agentctl - supervisor for locally-running AI coding-agent CLIs.

Tracks agent sessions (Claude Code, Codex, OpenCode, Pi, ...), keeps two
agents out of the same directory, and runs cleanup fuses once a directory
goes idle.
"""

__version__ = "0.1.0"
