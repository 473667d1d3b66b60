from .token_verifier import TokenCache, TokenVerifier

__all__ = ["TokenCache", "TokenVerifier"]
