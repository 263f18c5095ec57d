"""
Signed-in Identities

Key Components:
- user.py: UserSession, one identity with its OAuth agent, proxied AppView client and profile cache
- registry.py: SessionRegistry, the owner of every UserSession and of the active identity

The registry is constructed explicitly and passed to its consumers; there is no
module-level instance.
"""
