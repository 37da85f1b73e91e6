"""Container: load/save of the encrypted credential container and live-graph factory."""

from __future__ import annotations

import json
import logging
import secrets
import time
from typing import Optional, Union

from cryptography.exceptions import InvalidTag

from vigil.config import Config
from vigil.crypto.engine import CryptoEngine
from vigil.crypto.formats import (
    HEADER_SIZE,
    KDF_ARGON2ID,
    KDF_VERSION_19,
    MAGIC,
    MAGIC_LEN,
    NONCE_SIZE,
    PAYLOAD_OFFSET,
    PROTOCOL_VERSION,
    SALT_SIZE,
    ContainerHeader,
    parse_header,
)
from vigil.container.models import (
    LiveEntry,
    LiveGroup,
    LiveTimes,
    LiveUuid,
    group_from_dict,
    group_to_dict,
    utcnow,
)
from vigil.util.memory import KeyObfuscator, SecureMemory, TimedExposure

logger = logging.getLogger("vigil.container")


class Credentials:
    """Master password for a container, held in locked memory."""

    def __init__(self, password: Union[str, bytes, SecureMemory]):
        if isinstance(password, SecureMemory):
            self.password = password
        else:
            self.password = SecureMemory(password)

    def clear(self) -> None:
        self.password.clear()


class Container:
    """An open container: header, derived keys and the live root group.

    Also the factory the tree synchroniser uses to create live nodes.
    """

    def __init__(
        self,
        header: ContainerHeader,
        crypto: CryptoEngine,
        root: LiveGroup,
        name: str,
        enc_key: bytes,
        hmac_key: bytes,
    ):
        self.header = header
        self.crypto = crypto
        self.root = root
        self.name = name
        self._enc_ko: Optional[KeyObfuscator] = KeyObfuscator(SecureMemory(enc_key))
        self._enc_ko.obfuscate()
        self._hmac_ko: Optional[KeyObfuscator] = KeyObfuscator(SecureMemory(hmac_key))
        self._hmac_ko.obfuscate()

    # ------------------------------------------------------------------
    #  Create / load
    # ------------------------------------------------------------------
    @classmethod
    def create(
        cls,
        credentials: Credentials,
        name: str = Config.DEFAULT_CONTAINER_NAME,
        kdf_params: dict | None = None,
    ) -> Container:
        crypto = CryptoEngine(kdf_params)
        salt = secrets.token_bytes(SALT_SIZE)
        enc_key, hmac_key = crypto.derive_keys(credentials.password, salt)
        now = time.time()
        header = ContainerHeader(
            version=PROTOCOL_VERSION,
            counter=0,
            salt=salt,
            created=now,
            modified=now,
            kdf_algorithm=KDF_ARGON2ID,
            kdf_version=KDF_VERSION_19,
            kdf_time_cost=crypto.time_cost,
            kdf_memory_cost=crypto.memory_cost,
            kdf_parallelism=crypto.parallelism,
        )
        root = LiveGroup(name=name)
        logger.info("New container created")
        return cls(header, crypto, root, name, enc_key, hmac_key)

    @classmethod
    def load(cls, data: bytes, credentials: Credentials) -> Container:
        """Decrypt *data*; raises ValueError on wrong password or corruption."""
        if len(data) < PAYLOAD_OFFSET:
            raise ValueError("File is not a valid container")
        hdr = parse_header(data)
        if hdr.version != PROTOCOL_VERSION:
            raise ValueError(f"Unsupported container version: {hdr.version}")
        if hdr.kdf_algorithm != KDF_ARGON2ID:
            raise ValueError(f"Unsupported KDF algorithm: {hdr.kdf_algorithm}")

        # Use KDF params from the header itself
        engine = CryptoEngine(hdr.get_kdf_params())
        enc_key, hmac_key = engine.derive_keys(credentials.password, hdr.salt)

        if not engine.verify_hmac(hmac_key, data[: MAGIC_LEN + HEADER_SIZE], hdr.hmac):
            raise ValueError("Invalid header HMAC - wrong password or corrupted container")

        encrypted = data[PAYLOAD_OFFSET:]
        nonce = encrypted[:NONCE_SIZE]
        try:
            plaintext = engine.decrypt_data(
                enc_key, nonce, encrypted[NONCE_SIZE:], data[:PAYLOAD_OFFSET]
            )
        except InvalidTag as exc:
            raise ValueError("Container payload failed authentication") from exc

        try:
            payload = json.loads(plaintext.decode("utf-8"))
            root = group_from_dict(payload["root"])
            name = payload.get("name") or Config.DEFAULT_CONTAINER_NAME
        except (KeyError, TypeError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValueError("Container payload is malformed") from exc
        finally:
            pt_ba = bytearray(plaintext)
            for i in range(len(pt_ba)):
                pt_ba[i] = 0

        container = cls(hdr, engine, root, name, enc_key, hmac_key)
        logger.info(
            "Container opened - %d entries", sum(1 for _ in root.iter_entries())
        )
        return container

    # ------------------------------------------------------------------
    #  Save
    # ------------------------------------------------------------------
    def save(self) -> bytes:
        """Serialise and encrypt the live graph; returns the container bytes."""
        if self._enc_ko is None or self._hmac_ko is None:
            raise RuntimeError("Container is closed")

        payload = {"name": self.name, "root": group_to_dict(self.root)}
        plaintext = json.dumps(payload).encode("utf-8")
        try:
            self.header.counter += 1
            self.header.modified = time.time()
            header_bytes = self.header.pack()

            with TimedExposure(self._hmac_ko) as hk:
                self.header.hmac = self.crypto.compute_hmac(
                    hk.get_bytes(), MAGIC + header_bytes
                )
            ad = MAGIC + header_bytes + self.header.hmac
            with TimedExposure(self._enc_ko) as ek:
                nonce, ciphertext = self.crypto.encrypt_data(ek.get_bytes(), plaintext, ad)
            return ad + nonce + ciphertext
        finally:
            pt_ba = bytearray(plaintext)
            for i in range(len(pt_ba)):
                pt_ba[i] = 0

    # ------------------------------------------------------------------
    #  Live-graph factory
    # ------------------------------------------------------------------
    def default_group(self) -> LiveGroup:
        return self.root

    def create_group(self, parent: LiveGroup, name: str) -> LiveGroup:
        group = LiveGroup(uuid=self._fresh_uuid(), name=name)
        parent.groups.append(group)
        return group

    def create_entry(self, parent: LiveGroup) -> LiveEntry:
        now = utcnow()
        entry = LiveEntry(
            uuid=self._fresh_uuid(), times=LiveTimes(creation_time=now, last_mod_time=now)
        )
        parent.entries.append(entry)
        return entry

    def _fresh_uuid(self) -> LiveUuid:
        used = {g.uuid for g in self.root.iter_groups()}
        used.update(e.uuid for e in self.root.iter_entries())
        while True:
            candidate = LiveUuid.random()
            if candidate not in used:
                return candidate

    # ------------------------------------------------------------------
    #  Close / cleanup
    # ------------------------------------------------------------------
    def close(self) -> None:
        if self._enc_ko:
            self._enc_ko.clear()
        if self._hmac_ko:
            self._hmac_ko.clear()
        self._enc_ko = None
        self._hmac_ko = None
