"""ccost: token and cost accounting for Claude Code conversation transcripts."""

__version__ = "0.3.0"
USER_AGENT = f"ccost/{__version__}"
