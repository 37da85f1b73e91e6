"""CryptoEngine: Argon2id KDF, ChaCha20-Poly1305 AEAD, HMAC-SHA256."""

from __future__ import annotations

import hashlib
import hmac as hmac_mod
import logging
import secrets
from typing import Tuple

import argon2
import argon2.low_level
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from vigil.crypto.formats import KEY_SIZE, NONCE_SIZE
from vigil.util.memory import SecureMemory

logger = logging.getLogger("vigil.crypto")


def _wipe(buf: bytes) -> None:
    ba = bytearray(buf)
    for i in range(len(ba)):
        ba[i] = 0


class CryptoEngine:
    """Argon2id KDF + ChaCha20-Poly1305 AEAD + HMAC-SHA256."""

    HKDF_INFO = b"Vigil-1 container key-split"

    def __init__(self, kdf_params: dict | None = None):
        if kdf_params is None:
            from vigil.config import Config

            kdf_params = Config.get_kdf_params()

        self.time_cost = kdf_params["time_cost"]
        self.memory_cost = kdf_params["memory_cost"]
        self.parallelism = kdf_params["parallelism"]

        logger.debug(
            "CryptoEngine: Argon2id(t=%d, m=%d KiB, p=%d)",
            self.time_cost,
            self.memory_cost,
            self.parallelism,
        )

    def derive_keys(self, password: SecureMemory, salt: bytes) -> Tuple[bytes, bytes]:
        """Return ``(enc_key, hmac_key)`` for *password* and *salt*."""
        if len(password) == 0:
            raise ValueError("Empty password")

        master_key = b""
        expanded = b""
        try:
            master_key = argon2.low_level.hash_secret_raw(
                password.get_bytes(),
                salt,
                time_cost=self.time_cost,
                memory_cost=self.memory_cost,
                parallelism=self.parallelism,
                hash_len=KEY_SIZE,
                type=argon2.Type.ID,
            )
            hkdf = HKDF(
                algorithm=hashes.SHA256(),
                length=KEY_SIZE * 2,
                salt=None,
                info=self.HKDF_INFO,
            )
            expanded = hkdf.derive(master_key)
            return expanded[:KEY_SIZE], expanded[KEY_SIZE:]
        except MemoryError:
            raise RuntimeError(
                f"Not enough RAM for KDF ({self.memory_cost // 1024} MiB required). "
                "Try a lower KDF profile."
            )
        finally:
            _wipe(master_key)
            _wipe(expanded)

    # ------------------------------------------------------------------
    def encrypt_data(
        self, key: bytes, plaintext: bytes, associated_data: bytes = b""
    ) -> Tuple[bytes, bytes]:
        cipher = ChaCha20Poly1305(key)
        nonce = secrets.token_bytes(NONCE_SIZE)
        return nonce, cipher.encrypt(nonce, plaintext, associated_data)

    def decrypt_data(
        self, key: bytes, nonce: bytes, ciphertext: bytes, associated_data: bytes = b""
    ) -> bytes:
        cipher = ChaCha20Poly1305(key)
        return cipher.decrypt(nonce, ciphertext, associated_data)

    # ------------------------------------------------------------------
    def compute_hmac(self, key: bytes, data: bytes) -> bytes:
        return hmac_mod.new(key, data, hashlib.sha256).digest()

    def verify_hmac(self, key: bytes, data: bytes, expected: bytes) -> bool:
        return hmac_mod.compare_digest(self.compute_hmac(key, data), expected)
