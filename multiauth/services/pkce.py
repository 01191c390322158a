"""PKCE (RFC 7636) and random token helpers."""

import base64
import hashlib
import secrets


def generate_state() -> str:
    """Generate cryptographically secure state token (256-bit)."""
    return secrets.token_urlsafe(32)


def generate_nonce() -> str:
    """Generate a nonce for identity-token replay protection."""
    return secrets.token_urlsafe(32)


def generate_code_verifier() -> str:
    """Generate a code verifier (43 chars, within the 43-128 range)."""
    return secrets.token_urlsafe(32)


def derive_code_challenge(code_verifier: str) -> str:
    """S256 challenge: base64url(sha256(verifier)) without padding."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
