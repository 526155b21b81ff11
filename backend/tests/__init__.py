"""
Pytest suite for the order lifecycle backend.

Test categories:
- Unit tests: services against an in-memory SQLite store
- Route tests: full FastAPI app through httpx ASGITransport
- Edge cases: conflicts, rollback, idempotent fixes
"""
