"""
Data Models

Pydantic models shared across the package. None of these are persisted directly;
the session store keeps plain identity strings and the OAuth client owns credentials.

Key Models:
- identity.py: DID documents and the resolved actor (DID, handle, PDS)
- profile.py: The gifdex profile view and the profile record written to the PDS
"""
