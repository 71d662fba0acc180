import base64
import binascii
import json
from typing import Any, Union

from ..errors import CredentialBlobError, InvalidPassphraseError

# Prefix families of GitHub tokens (classic, OAuth, user-to-server, server-to-server, refresh, fine-grained)
TOKEN_PREFIXES = ("ghp_", "gho_", "ghu_", "ghs_", "ghr_", "github_pat_")
MIN_TOKEN_LENGTH = 40


def is_valid_token(token: Any) -> bool:
    """Shape check only; says nothing about whether GitHub will accept it."""
    return (
        isinstance(token, str)
        and token.startswith(TOKEN_PREFIXES)
        and len(token) >= MIN_TOKEN_LENGTH
    )


def _xor(data: bytes, key: bytes) -> bytes:
    return bytes(b ^ key[i % len(key)] for i, b in enumerate(data))


def parse_blob(document: Union[str, bytes, dict]) -> str:
    """Extract the base64 ciphertext from a ``{"data": ...}`` document."""
    try:
        if isinstance(document, (str, bytes)):
            document = json.loads(document)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise CredentialBlobError() from e

    data = document.get("data") if isinstance(document, dict) else None
    if not isinstance(data, str) or not data:
        raise CredentialBlobError()
    return data


def unwrap(encrypted_blob: str, passphrase: str) -> str:
    """Recover the bearer token from the XOR-obfuscated blob.

    The cipher always "succeeds", so a wrong passphrase is only detected by the
    shape check. Every failure raises the same InvalidPassphraseError.
    """
    if not passphrase:
        raise InvalidPassphraseError()

    try:
        ciphertext = base64.b64decode(encrypted_blob, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidPassphraseError() from e

    # The blob was produced char-by-char over latin-1 code points; a passphrase
    # character outside that range can never yield a token character
    try:
        key = passphrase.encode("latin-1")
    except UnicodeEncodeError as e:
        raise InvalidPassphraseError() from e
    token = _xor(ciphertext, key).decode("latin-1").strip()

    if not is_valid_token(token):
        raise InvalidPassphraseError()
    return token
