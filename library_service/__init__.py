"""Library Service - Core Application Package

This package contains the core service modules including:
- Wire codec and routing (protocol.py, routing.py, server.py)
- Request handlers (handlers.py)
- Session authentication (sessions.py, credentials.py)
- Lending engine (lending.py)
- Database layer (database.py, gateway.py)
- CLI interface (cli.py)
"""

__version__ = "1.0.0"
