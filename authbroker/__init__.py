"""
Auth Broker

OAuth2/OpenID Connect login-session broker: signs users in with third-party
identity providers, protects state-changing requests against CSRF, and issues
sessions as signed tokens or server-side records.
"""

__version__ = "1.0.0"
