"""
Session Persistence

Durable key/value persistence for the session registry.

Key Components:
- storage.py: The KeyValueStorage contract with in-memory and Redis engines
- session.py: SessionStore (storedDids, activeUser) and RedirectStore (oauth-session-storage)

Only the registry writes through these helpers, using a read-modify-write sequence
with no concurrent writers. Persisted state is read once, during restore.
"""
