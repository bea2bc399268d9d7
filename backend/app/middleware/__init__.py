"""
Middleware package for request authentication and throttling
"""

from .request_gate import AuthContext, RequestAuthenticator, RequestGate

__all__ = ["AuthContext", "RequestAuthenticator", "RequestGate"]
