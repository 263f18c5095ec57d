"""
AT Protocol Integration

This package provides the outbound side of the account manager: the XRPC client used
for every API call and the OAuth agent abstraction that authenticates those calls.

Key Components:
- chain.py: Middleware chain for XRPC requests (proxy header, metrics)
- xrpc.py: XrpcClient, proxy targets and response checking
- oauth.py: The OAuthClient contract, authorization targets and OAuthUserAgent

The OAuth protocol itself (PAR, PKCE, DPoP, token refresh) lives behind the injected
OAuthClient. Calls made through an OAuthUserAgent are signed by that client; calls
made without one go straight to the public AppView.
"""
