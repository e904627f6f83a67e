"""
Top-level package for the Discord relay bot.

This package hosts:
- config loading (dotenv + optional YAML) and validation
- the backend client and streaming reassembly
- the relay core: loop guard, chunker, orchestrator, heartbeat
- Discord wiring, attachment/voice processing and conversation logs
"""

__version__ = "0.3.0"
