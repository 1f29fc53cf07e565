"""
Core instrumentation components.

This package contains the request tracing and logging building blocks:
- Request context store and inbound boundary handling
- Sensitive data masking engine
- Operation interceptor (entry/exit/error/slow/audit logging)
- Outbound header propagation for httpx and aiohttp
- Structured log serializer
- Metrics collection
"""
