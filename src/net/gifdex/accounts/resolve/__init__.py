"""
Identity Resolution

This package resolves AT Protocol identifiers (handles, DIDs) to the DID, handle
and PDS endpoint needed to start an authorization.

Key Components:
- syntax.py: Handle and DID syntax checks used before any network I/O
- handle.py: Handle to DID resolution methods and the racing composite
- did.py: DID document resolution methods and the method-tag composite
- actor.py: Combined handle-or-DID resolution and the configured factory
- __main__.py: CLI interface for resolution

Resolution Types:
1. Handle Resolution
   - DNS-based resolution via TXT records (_atproto.{handle}), either through the
     system resolver or DNS-over-HTTPS JSON
   - HTTP-based resolution via well-known endpoints (.well-known/atproto-did)
   - All methods race; the first success wins and the rest are cancelled

2. DID Resolution
   - did:plc method resolution via PLC directory
   - did:web method resolution via well-known endpoints
   - Exactly one resolver runs, picked by the DID method tag

Resolution never touches the session registry or persisted state. Failures are
reported as ResolutionFailed with the reason for every method attempted.
"""
