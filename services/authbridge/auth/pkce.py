"""PKCE (RFC 7636) verifier and challenge helpers.

Verifiers are held only by the pending flow that created them and sent
once, as code_verifier, in the token request. Never log or persist them.
"""

import base64
import hashlib
import hmac
import secrets

MIN_VERIFIER_BYTES = 32
CHALLENGE_METHOD = "S256"


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def generate_verifier(num_bytes: int = MIN_VERIFIER_BYTES) -> str:
    """Generate a URL-safe, unpadded code verifier from random bytes."""
    if num_bytes < MIN_VERIFIER_BYTES:
        raise ValueError(f"PKCE verifier needs at least {MIN_VERIFIER_BYTES} random bytes")
    return _b64url(secrets.token_bytes(num_bytes))


def derive_challenge(verifier: str) -> str:
    """S256 challenge for a verifier."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return _b64url(digest)


def verify_challenge(verifier: str, challenge: str, method: str = CHALLENGE_METHOD) -> bool:
    """Verify a code_verifier against a stored code_challenge."""
    if method != CHALLENGE_METHOD:
        return False
    return hmac.compare_digest(derive_challenge(verifier), challenge)
