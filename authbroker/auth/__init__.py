"""
Authentication Package

This package holds the login-session engine: everything between an inbound
auth request and the cookies/redirect that answer it.

Key responsibilities:
- CSRF token issuance and verification (double-submit cookie)
- Authorization request construction with state, nonce and PKCE checks
- Callback verification, code exchange and OIDC ID token validation
- Identity normalization and account linking through the storage adapter
- Session issuance for the jwt and database strategies

Modules:
- tokens: HKDF-keyed HS256 token codec
- cookies: Cookie names, sealed check cookies, chunked session cookie
- csrf: CSRF token lifecycle
- callback_url: Post-auth redirect resolution
- checks: State, nonce and PKCE values
- signin: Provider authorization URL
- oidc: Discovery, JWKS and ID token verification
- callback: OAuth/OIDC callback state machine
- identity: Profile mapping and user/account reconciliation
- session: Session issue, lookup, refresh and sign-out
- actions: Action dispatcher and error boundary
- routes: FastAPI router adapting HTTP requests to the dispatcher

The sign-in flow:
1. Client POSTs /auth/signin/{provider} with the CSRF token
2. The engine redirects to the provider with state/nonce/code_challenge
3. The provider redirects back to /auth/callback/{provider}
4. The engine validates the checks, exchanges the code, verifies the ID token
5. The user is reconciled with storage and a session cookie is issued
"""
