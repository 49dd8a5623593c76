from __future__ import annotations

import base64
import hashlib
import json
import os

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.config import Settings


class SecretCipher:
    """AES-GCM envelope for tenant database credentials stored in the catalog."""

    def __init__(self, settings: Settings) -> None:
        if settings.secrets_master_key_b64:
            self._key = base64.b64decode(settings.secrets_master_key_b64)
            self.key_version = "v1"
        else:
            # Dev fallback for local environments.
            self._key = hashlib.sha256(b"crm-core-dev-key").digest()
            self.key_version = "dev-v1"
        if len(self._key) not in {16, 24, 32}:
            raise ValueError("SECRETS_MASTER_KEY_B64 must decode to 16/24/32 bytes")

    def encrypt(self, payload: dict) -> dict:
        nonce = os.urandom(12)
        ciphertext = AESGCM(self._key).encrypt(nonce, json.dumps(payload).encode("utf-8"), None)
        return {
            "key_version": self.key_version,
            "nonce_b64": base64.b64encode(nonce).decode("ascii"),
            "ciphertext_b64": base64.b64encode(ciphertext).decode("ascii"),
        }

    def decrypt(self, blob: dict) -> dict:
        nonce = base64.b64decode(blob["nonce_b64"])
        ciphertext = base64.b64decode(blob["ciphertext_b64"])
        plaintext = AESGCM(self._key).decrypt(nonce, ciphertext, None)
        return json.loads(plaintext.decode("utf-8"))

    def seal_credentials(self, user: str, password: str) -> dict:
        return self.encrypt({"user": user, "password": password})

    def open_credentials(self, blob: dict) -> dict:
        creds = self.decrypt(blob)
        if not creds.get("user"):
            raise ValueError("tenant credentials blob has no user")
        return {"user": str(creds["user"]), "password": str(creds.get("password", ""))}
