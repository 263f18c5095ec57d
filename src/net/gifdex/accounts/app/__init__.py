"""
Application Layer

A loopback aiohttp application around the session registry, so a local client can
drive sign-in, switching and sign-out over HTTP.

Key Components:
- cli.py: Entry point and logging configuration
- server.py: Web server configuration, startup/shutdown and middleware setup
- config.py: Configuration management using Pydantic settings
- metrics.py: Metrics abstraction over aio-statsd
- handlers/: Request handlers for the account and internal endpoints

The application uses two middleware layers:
- Statsd middleware for metrics collection
- Sentry middleware for error reporting

It provides the following main endpoints:
- Account endpoints (/auth/*, /oauth/callback)
- Internal API endpoints (/internal/*)
"""
