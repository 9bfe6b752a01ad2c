"""Identity token claim extraction.

The id token arrives over a direct TLS exchange with the token endpoint,
so only the claims are read here; the signature is not verified.
"""

from typing import Any

import jwt


class IdTokenDecodeError(Exception):
    """Raised when an encoded identity token cannot be decoded."""


class IdToken:
    """Decoded identity token payload."""

    def __init__(self, payload: dict[str, Any], encoded: str = "") -> None:
        self.payload = payload
        self.encoded = encoded

    def claim(self, name: str) -> Any:
        return self.payload.get(name)

    @classmethod
    def from_encoded(cls, encoded: str) -> "IdToken":
        if not encoded or not isinstance(encoded, str):
            raise IdTokenDecodeError("Empty identity token")
        try:
            payload = jwt.decode(encoded, options={"verify_signature": False})
        except jwt.PyJWTError as exc:
            raise IdTokenDecodeError(f"Malformed identity token: {exc}") from exc
        if not isinstance(payload, dict):
            raise IdTokenDecodeError("Identity token payload is not an object")
        return cls(payload, encoded)


def first_claim(idtoken: IdToken, *names: str) -> Any:
    """Return the first non-empty claim among ``names``."""
    for name in names:
        value = idtoken.claim(name)
        if value:
            return value
    return None


def decode_id_token(encoded: str) -> tuple[str, IdToken]:
    """Decode ``encoded`` and return ``(unique_id, idtoken)``.

    The unique id is the ``oid`` claim, falling back to ``sub``.
    """
    idtoken = IdToken.from_encoded(encoded)
    unique_id = first_claim(idtoken, "oid", "sub")
    if not unique_id:
        raise IdTokenDecodeError("Identity token carries no oid or sub claim")
    return str(unique_id), idtoken
