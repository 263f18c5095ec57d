"""
gifdex accounts - multi-account AT Protocol session manager

This package manages the signed-in identities of a gifdex client. It resolves
AT Protocol handles and DIDs, drives the two-phase OAuth sign-in flow through an
injected OAuth client, restores persisted sessions on start, and arbitrates which
identity is active for outbound XRPC calls.

Key Components:
- resolve: Handle and DID document resolution (DNS, DNS-over-HTTPS, well-known, PLC, did:web)
- store: Key/value persistence of the signed-in identity list and the active identity
- atproto: XRPC client, request middleware chain and the OAuth agent abstraction
- auth: The per-identity UserSession and the SessionRegistry that owns them
- app: aiohttp loopback application, configuration, metrics and CLI entry points

Lifecycle Overview:
1. Startup
   - The registry configures the OAuth client with the identity resolver
   - Persisted identities are restored concurrently; failures are pruned
   - The persisted active identity is reconciled against the restored set

2. Sign-in
   - The identifier is classified (account or PDS) and an authorization URL built
   - The caller navigates away; the callback finalizes the exchange
   - The new identity is persisted and becomes active

3. Switching and sign-out
   - The registry re-points or removes identities and notifies subscribers
   - Subscribers rebuild anything bound to the previous active client
"""
