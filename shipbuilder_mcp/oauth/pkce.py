# shipbuilder_mcp/oauth/pkce.py
import base64
import enum
import hashlib
import secrets
from typing import Callable, Dict, Optional


class PkceMethod(str, enum.Enum):
    """Supported code_challenge_method values. Anything else is rejected."""

    S256 = "S256"
    PLAIN = "plain"

    @classmethod
    def parse(cls, value: Optional[str]) -> "PkceMethod":
        """
        Parses a raw code_challenge_method. Unknown or missing values raise
        ValueError instead of falling back to a default method.
        """
        if value is None:
            raise ValueError("code_challenge_method is required when a code_challenge is supplied.")
        try:
            return cls(value)
        except ValueError:
            raise ValueError(
                f"Unsupported PKCE code challenge method: {value}. Must be 'S256' or 'plain'."
            ) from None


def _s256_transform(code_verifier: str) -> str:
    hashed_verifier = hashlib.sha256(code_verifier.encode('ascii')).digest()
    return base64.urlsafe_b64encode(hashed_verifier).rstrip(b'=').decode('ascii')


def _verify_s256(code_challenge: str, code_verifier: str) -> bool:
    try:
        expected = _s256_transform(code_verifier)
    except UnicodeEncodeError:
        return False
    return secrets.compare_digest(code_challenge.encode("ascii", "replace"), expected.encode("ascii"))


def _verify_plain(code_challenge: str, code_verifier: str) -> bool:
    return secrets.compare_digest(code_challenge.encode("utf-8"), code_verifier.encode("utf-8"))


_VERIFIERS: Dict[PkceMethod, Callable[[str, str], bool]] = {
    PkceMethod.S256: _verify_s256,
    PkceMethod.PLAIN: _verify_plain,
}


def verify_code_verifier(method: PkceMethod, code_challenge: str, code_verifier: str) -> bool:
    """
    Checks a code_verifier against the stored challenge using the
    verification function registered for the method (RFC 7636 - Section 4.6).
    """
    return _VERIFIERS[PkceMethod(method)](code_challenge, code_verifier)

