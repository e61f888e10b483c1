# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the credential codec unit so this responsibility stays isolated, testable, and easy to evolve.

Reversible symmetric encryption for stored provider API keys. The key is
derived from one configured secret, so any process sharing that secret can
decrypt what another stored.
"""

from __future__ import annotations

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from llmcompare.core.config import get_runtime_settings
from llmcompare.services.exceptions import ConfigurationError


class CredentialCodec:
    """encrypt(plaintext) -> ciphertext and decrypt(ciphertext) -> plaintext."""

    def __init__(self, secret: str):
        digest = hashlib.sha256(secret.encode("utf-8")).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(digest))

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as exc:
            raise ConfigurationError(
                "Stored API key could not be decrypted with the configured secret"
            ) from exc


def default_codec() -> CredentialCodec:
    """Codec bound to the secret from the runtime settings."""
    return CredentialCodec(str(get_runtime_settings()["secret_key"]))
